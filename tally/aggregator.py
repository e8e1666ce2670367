import logging
import time
from concurrent.futures import ThreadPoolExecutor
from threading import Lock

from .buckets import BucketKeyResolver
from .errors import InvalidEvent, StoreError, StoreCorrupt, TallyError
from .event import Event
from .planning import IncrementPlanner
from .query import RangeQueryPlanner, merge
from .sampling import PreallocationSampler


log = logging.getLogger(__name__)


class Aggregator(object):
    """
    Coordinates counting events into a store and reading series back out.

    There is no central lock: any number of threads may call ``record()`` at
    once, including on the same bucket, since each increment is a single
    atomic upsert in the store.
    """

    def __init__(self, store, expected_daily_volume=None,
                 volume_estimator=None, sampler=None, resolver=None,
                 max_attempts=None, initial_delay=0.05, max_delay=5.0,
                 preallocate_async=True, sleep=time.sleep):
        """
        :param store:
            An ``AggregationStore``.
        :param expected_daily_volume:
            Expected hits per page per day, used to tune pre-allocation.
        :param volume_estimator:
            Callable ``func(site, page)`` returning the expected daily hits
            for that page, or None. Takes precedence over
            ``expected_daily_volume``.
        :param max_attempts:
            Number of attempts for an increment before giving up. None means
            keep retrying until the store acknowledges it.
        :param preallocate_async:
            If True, pre-allocation writes happen on a background thread and
            never delay ``record()``.
        """
        self.store = store
        self.resolver = resolver or BucketKeyResolver()
        self.planner = IncrementPlanner(self.resolver)
        self.query_planner = RangeQueryPlanner(self.resolver)
        self.sampler = sampler or PreallocationSampler()

        self.expected_daily_volume = expected_daily_volume
        self.volume_estimator = volume_estimator

        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.sleep = sleep

        if preallocate_async:
            self.executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix='tally-preallocate')
        else:
            self.executor = None

        self.pointer = self.store.get_pointer()

        self._stats_lock = Lock()
        self.num_recorded = 0
        self.num_failed = 0
        self.num_preallocated = 0

    def count_stat(self, name, n=1):
        with self._stats_lock:
            setattr(self, name, getattr(self, name) + n)

    def stats(self):
        with self._stats_lock:
            return dict(recorded=self.num_recorded,
                        failed=self.num_failed,
                        preallocated=self.num_preallocated)

    def retry(self, description, func, *args):
        """
        Call ``func(*args)``, retrying transient store errors with
        exponential backoff. Non-retryable errors, and the last error once
        ``max_attempts`` is used up, are raised.
        """
        delay = self.initial_delay
        attempt = 1
        while True:
            try:
                return func(*args)
            except StoreError as e:
                if not e.retryable or (self.max_attempts and
                                       attempt >= self.max_attempts):
                    raise
                log.warning('Attempt %d at %s failed, retrying in %0.2fs: '
                            '%s: %s', attempt, description, delay,
                            e.__class__.__name__, e)
                self.sleep(delay)
                delay = min(delay * 2, self.max_delay)
                attempt += 1

    def expected_volume(self, event):
        if self.volume_estimator:
            return self.volume_estimator(event.site, event.page)
        return self.expected_daily_volume

    def record(self, event):
        """
        Count one event. Both of its upserts are attempted even if the first
        one fails, since they touch independent buckets.

        :raises InvalidEvent:
            If the event is malformed. Nothing is written.
        :raises StoreError:
            The first error from an upsert that could not be applied.
        """
        ops = self.planner.plan(event)

        errors = []
        for op in ops:
            try:
                self.retry('incrementing %s' % op.key.id, self.store.apply, op)
            except StoreError as e:
                log.error('Failed to apply %s: %s: %s', op,
                          e.__class__.__name__, e)
                errors.append(e)

        if errors:
            self.count_stat('num_failed')
            raise errors[0]

        self.count_stat('num_recorded')

        if self.sampler.should_preallocate(self.expected_volume(event)):
            self.schedule_preallocation(event)

    def record_hit(self, timestamp, site, page):
        try:
            event = Event.at(timestamp, site, page)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidEvent('bad timestamp %r: %s' % (timestamp, e))
        self.record(event)

    def record_many(self, events):
        """
        Count a batch of events. A failure on one event doesn't stop the rest
        of the batch.

        :returns:
            List of ``(event, exception)`` pairs for events that failed.
        """
        failures = []
        for event in events:
            try:
                self.record(event)
            except TallyError as e:
                failures.append((event, e))
        if failures:
            log.warning('%d of the events in batch failed', len(failures))
        return failures

    def handle(self, rec, ptr):
        """
        Count a ``HitRecord`` read from a log, then advance the resume pointer
        past it. Malformed records are logged and skipped. A store error that
        outlasts the retries is logged and the pointer still advances: one of
        the two upserts may already be applied, and replaying the record would
        count it twice.
        """
        try:
            self.record(rec.to_event())
        except InvalidEvent as e:
            log.warning('Skipping invalid record %r: %s', rec, e)
        except StoreCorrupt as e:
            log.error('Skipping record %r on corrupt bucket: %s', rec, e)
        except StoreError as e:
            log.error('Giving up on record %r: %s: %s', rec,
                      e.__class__.__name__, e)

        self.pointer = ptr
        self.store.update_pointer(ptr)

    def get_pointer(self):
        return self.pointer

    def schedule_preallocation(self, event):
        if self.executor is None:
            self.preallocate(event)
            return
        try:
            future = self.executor.submit(self.preallocate, event)
        except RuntimeError:
            log.debug('Pre-allocation executor is shut down, skipping %s',
                      event)
            return
        future.add_done_callback(self.preallocation_done)

    def preallocation_done(self, future):
        if future.cancelled():
            return
        e = future.exception()
        if e is not None:
            log.error('Pre-allocation raised %s: %s', e.__class__.__name__, e,
                      exc_info=e)

    def preallocate(self, event):
        """
        Create the buckets that the day after ``event`` will need, with every
        counter at zero. Best effort: failures are logged and dropped.
        """
        for op in self.planner.plan_preallocation(event):
            try:
                self.store.apply(op)
            except StoreError as e:
                log.warning('Pre-allocation of %s failed: %s: %s',
                            op.key.id, e.__class__.__name__, e)
            else:
                log.debug('Pre-allocated %s', op.key.id)
                self.count_stat('num_preallocated')

    def close(self):
        if self.executor is not None:
            self.executor.shutdown(wait=True)

    def series(self, site, page, start, end, granularity='hour'):
        """
        Return the hit counts for a page over ``[start, end)``.

        :param granularity:
            ``minute``, ``hour`` or ``day``.
        :returns:
            List of ``(timestamp, count)`` pairs in time order. Periods with
            no bucket count as zero; if there are no buckets at all the list
            is empty.
        """
        reads = self.query_planner.plan_query(site, page, start, end,
                                              granularity)
        if not reads:
            return []

        first, last = reads[0].key, reads[-1].key
        buckets = self.retry('reading %s to %s' % (first.id, last.id),
                             self.store.range_read, site, page,
                             first.granularity, first.period, last.period)
        return merge(reads, buckets)

    def total(self, site, page, start, end, granularity='hour'):
        return sum(count for ts, count in
                   self.series(site, page, start, end, granularity))

    def bucket(self, granularity, site, page, when):
        """
        Return one bucket record as a dict, or None if it doesn't exist.
        """
        try:
            event = Event.at(when, site, page)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidEvent('bad timestamp %r: %s' % (when, e))
        key = self.resolver.resolve(event, granularity)
        bucket = self.retry('reading %s' % key.id, self.store.read, key)
        return bucket.to_dict() if bucket else None
