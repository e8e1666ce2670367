"""
Range queries over bucket records.

A query names a site, a page, a half-open time range ``[start, end)`` and the
unit of the series wanted back. Minute and hour series are read out of daily
buckets; day series are read out of monthly buckets. The planner works out
which buckets intersect the range and which of their counters fall inside it;
``merge`` then stitches whatever the store returned into one ordered series of
``(timestamp, count)`` pairs.
"""

from collections import namedtuple
from datetime import timedelta

from .buckets import BucketKey, BucketKeyResolver, DAILY, MONTHLY, \
    validate_dimensions
from .errors import EmptyRange
from .util import to_utc


# Series unit -> granularity of the buckets it is served from.
units = {
    'minute': DAILY,
    'hour': DAILY,
    'day': MONTHLY,
}


class StoreRead(namedtuple('StoreRead', ['key', 'unit', 'slots'])):
    """
    A read of one bucket. ``slots`` holds the ``(field, start)`` pairs of
    the counters wanted from it, in time order.
    """
    __slots__ = ()

    @property
    def fields(self):
        return [path for path, start in self.slots]


class RangeQueryPlanner(object):

    def __init__(self, resolver=None):
        self.resolver = resolver or BucketKeyResolver()

    def rollup_for(self, unit):
        try:
            granularity = units[unit]
        except KeyError:
            raise ValueError('invalid series granularity: %r' % (unit,))
        return self.resolver.rollup(granularity)

    def plan_query(self, site, page, start, end, granularity='hour'):
        """
        Plan the bucket reads needed to answer a range query.

        :param start:
            Start of the range, inclusive.
        :param end:
            End of the range, exclusive.
        :param granularity:
            Unit of the resulting series: ``minute``, ``hour`` or ``day``.
        :returns:
            List of ``StoreRead``, one per intersecting bucket, in ascending
            period order. Buckets with no counter inside the range are left
            out.
        :raises EmptyRange:
            If ``end`` is not after ``start``.
        """
        validate_dimensions(site, page)
        start = to_utc(start)
        end = to_utc(end)
        if end <= start:
            raise EmptyRange('empty range: %s to %s' %
                             (start.isoformat(), end.isoformat()))

        rollup = self.rollup_for(granularity)
        last = end - timedelta(microseconds=1)

        reads = []
        for period in rollup.periods(start, last):
            slots = tuple((path, ts) for path, ts in
                          rollup.slots(period, granularity)
                          if start <= ts < end)
            if slots:
                key = BucketKey(rollup.granularity, site, page, period)
                reads.append(StoreRead(key, granularity, slots))
        return reads


def merge(reads, buckets):
    """
    Flatten bucket records into a single ordered series.

    :param reads:
        Reads as planned by ``RangeQueryPlanner.plan_query``.
    :param buckets:
        Bucket records returned by the store, in any order. Reads with no
        matching record contribute zeros.
    :returns:
        List of ``(timestamp, count)`` pairs, or an empty list if none of the
        planned buckets exist.
    """
    found = {bucket.key: bucket for bucket in buckets}
    if not any(read.key in found for read in reads):
        return []

    series = []
    for read in reads:
        bucket = found.get(read.key)
        for path, ts in read.slots:
            series.append((ts, bucket.get(path) if bucket else 0))
    return series
