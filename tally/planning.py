from collections import namedtuple

from .buckets import BucketKeyResolver, DAILY, MONTHLY


class UpsertOp(namedtuple('UpsertOp', ['key', 'increments', 'defaults'])):
    """
    One create-if-absent-then-increment against a single bucket.

    ``increments`` maps ``FieldPath`` to the amount to add; ``defaults`` is
    the full zero layout the bucket is created with if it doesn't exist yet.
    A store must apply both as a single atomic operation on that bucket.
    """
    __slots__ = ()

    @property
    def is_preallocation(self):
        return not any(self.increments.values())

    def __str__(self):
        return '%s %s' % (self.key.id,
                          ' '.join('%s+%d' % (path, n) for path, n in
                                   sorted(self.increments.items())))


class IncrementPlanner(object):
    """
    Turns an event into the upserts that count it. Every event produces
    exactly two operations, one on its daily bucket and one on its monthly
    bucket. The two are independent: they may be applied in either order or
    concurrently, and a failure of one says nothing about the other.
    """

    def __init__(self, resolver=None):
        self.resolver = resolver or BucketKeyResolver()

    def plan(self, event):
        event = self.resolver.validate(event)
        ops = []
        for granularity in (DAILY, MONTHLY):
            rollup = self.resolver.rollup(granularity)
            ops.append(UpsertOp(rollup.get_bucket(event),
                                rollup.increments_for(event),
                                rollup.defaults()))
        return ops

    def plan_preallocation(self, event):
        """
        Plan zero-increment upserts that create the buckets the day after
        ``event`` will be counted in: the next day's daily bucket, and the
        next month's monthly bucket when that day starts a new month.
        """
        event = self.resolver.validate(event)
        daily = self.resolver.rollup(DAILY)
        monthly = self.resolver.rollup(MONTHLY)

        key = daily.get_bucket(event)
        next_day = daily.next_period(key.period)
        ops = [UpsertOp(key._replace(period=next_day), {}, daily.defaults())]

        if next_day.month != key.period.month:
            mkey = monthly.get_bucket(event)
            ops.append(UpsertOp(mkey._replace(period=next_day), {},
                                monthly.defaults()))
        return ops
