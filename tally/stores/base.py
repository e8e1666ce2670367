from ..buckets import Bucket, FieldPath
from ..errors import StoreCorrupt


class AggregationStore(object):
    """
    Tally store superclass.

    A subclass persists bucket records and should implement at least the
    following methods, where ``key`` is a ``tally.buckets.BucketKey`` and
    counter fields are ``tally.buckets.FieldPath`` instances.

        def upsert_increment(self, key, increments, defaults):
            pass

        def read(self, key, fields=None):
            pass

        def range_read(self, site, page, granularity, start, end):
            pass

    ``upsert_increment`` must be atomic per bucket: concurrent increments on
    the same key may never lose updates. An adapter over an engine without an
    atomic increment has to provide that itself, with a compare-and-swap or
    transaction retry loop.

    Errors from the engine are translated into ``StoreUnavailable``,
    ``StoreTimeout`` or ``StoreCorrupt``.
    """

    def upsert_increment(self, key, increments, defaults):
        """
        Create the bucket with all ``defaults`` fields if it doesn't exist,
        then add ``increments`` to it.
        """
        raise NotImplementedError

    def read(self, key, fields=None):
        """
        Return the ``Bucket`` for ``key``, projected to ``fields`` if given,
        or None if there is no such bucket. A missing bucket is not an error.
        """
        raise NotImplementedError

    def range_read(self, site, page, granularity, start, end):
        """
        Return the buckets of one granularity for (site, page) whose period
        falls between ``start`` and ``end`` inclusive, ascending by period.
        """
        raise NotImplementedError

    def get_pointer(self):
        return None

    def update_pointer(self, ptr):
        pass

    def apply(self, op):
        "Apply a ``tally.planning.UpsertOp``."
        return self.upsert_increment(op.key, op.increments, op.defaults)

    def make_bucket(self, key, raw, fields=None):
        """
        Build a ``Bucket`` from a mapping of field names (or paths) to raw
        counter values, as they came out of the engine.

        :raises StoreCorrupt:
            If a field name doesn't parse or a value isn't a non-negative
            integer.
        """
        counts = {}
        for name, value in raw.items():
            try:
                path = (name if isinstance(name, FieldPath)
                        else FieldPath.parse(name))
            except ValueError:
                raise StoreCorrupt('bucket %s has invalid field %r' %
                                   (key.id, name))
            if fields is not None and path not in fields:
                continue
            counts[path] = self.parse_count(key, path, value)
        return Bucket(key, counts)

    def parse_count(self, key, path, value):
        if isinstance(value, bytes):
            value = value.decode('ascii', 'replace')
        if isinstance(value, str):
            try:
                value = int(value)
            except ValueError:
                pass
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise StoreCorrupt('bucket %s has invalid count %r for %s' %
                               (key.id, value, path))
        return value
