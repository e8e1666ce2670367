import logging
from threading import Lock

from .base import AggregationStore


log = logging.getLogger(__name__)


class MemoryStore(AggregationStore):
    """
    An in-memory store, intended for testing and for embedding in a single
    process. Upserts are made atomic with a single lock around the whole
    store.
    """

    def __init__(self):
        self._buckets = {}
        self._lock = Lock()
        self._ptr = None

    def upsert_increment(self, key, increments, defaults):
        with self._lock:
            doc = self._buckets.get(key)
            if doc is None:
                log.debug('Creating bucket %s', key.id)
                doc = self._buckets[key] = dict(defaults)
            for path, n in increments.items():
                doc[path] = doc.get(path, 0) + n

    def read(self, key, fields=None):
        with self._lock:
            doc = self._buckets.get(key)
            if doc is None:
                return None
            doc = dict(doc)
        return self.make_bucket(key, doc, fields)

    def range_read(self, site, page, granularity, start, end):
        with self._lock:
            matching = [(key, dict(doc))
                        for key, doc in self._buckets.items()
                        if key.granularity == granularity and
                        key.site == site and key.page == page and
                        start <= key.period <= end]
        matching.sort(key=lambda pair: pair[0].period)
        return [self.make_bucket(key, doc) for key, doc in matching]

    def get_pointer(self):
        return self._ptr

    def update_pointer(self, ptr):
        self._ptr = ptr

    def keys(self):
        with self._lock:
            return sorted(self._buckets, key=lambda key: key.id)

    def corrupt(self, key, path, value):
        "Overwrite a raw counter value. For exercising error handling."
        with self._lock:
            self._buckets.setdefault(key, {})[path] = value
