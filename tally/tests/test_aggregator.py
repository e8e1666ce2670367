from datetime import datetime, timedelta
from threading import Thread
from unittest import TestCase

import pytz

from tally.aggregator import Aggregator
from tally.buckets import DAILY, MONTHLY
from tally.errors import EmptyRange, InvalidEvent, StoreCorrupt, \
    StoreRejected, StoreTimeout, StoreUnavailable
from tally.event import Event
from tally.record import HitRecord
from tally.sampling import PreallocationSampler
from tally.stores.memory import MemoryStore
from tally.stores.sql import SQLStore

from .test_sampling import FixedRandom


def utc(*args):
    return datetime(*args, tzinfo=pytz.utc)


class FlakyStore(MemoryStore):
    """
    A memory store which raises ``exc`` on the first ``failures`` upserts
    matching ``fail_when``. Negative ``failures`` fails every time.
    """

    def __init__(self, failures=0, exc=StoreUnavailable, fail_when=None):
        MemoryStore.__init__(self)
        self.failures = failures
        self.exc = exc
        self.fail_when = fail_when or (lambda key, increments: True)
        self.calls = 0

    def upsert_increment(self, key, increments, defaults):
        self.calls += 1
        if self.failures and self.fail_when(key, increments):
            self.failures -= 1
            raise self.exc('flaky %s' % key.id)
        return MemoryStore.upsert_increment(self, key, increments, defaults)


class BrokenPreallocationStore(MemoryStore):
    """
    A memory store whose zero-increment upserts raise something that isn't a
    store error.
    """

    def upsert_increment(self, key, increments, defaults):
        if not increments:
            raise RuntimeError('disk on fire')
        return MemoryStore.upsert_increment(self, key, increments, defaults)


class TestAggregator(TestCase):

    def make_aggregator(self, store=None, **kwargs):
        self.sleeps = []
        kwargs.setdefault('preallocate_async', False)
        kwargs.setdefault('sampler', PreallocationSampler(rng=FixedRandom(1)))
        return Aggregator(store or MemoryStore(), sleep=self.sleeps.append,
                          **kwargs)

    def test_scenario(self):
        agg = self.make_aggregator()
        agg.record_hit('2010-10-10T00:00:00Z', 'site-1', '/apache_pb.gif')

        day = agg.bucket(DAILY, 'site-1', '/apache_pb.gif',
                         '2010-10-10T00:00:00Z')
        self.assertEqual(day['id'], '20101010/site-1//apache_pb.gif')
        self.assertEqual(day['counts']['hourly.0'], 1)
        self.assertEqual(day['counts']['minute.0.0'], 1)
        self.assertEqual(day['counts']['minute.0.1'], 0)
        self.assertEqual(day['counts']['total'], 1)

        month = agg.bucket(MONTHLY, 'site-1', '/apache_pb.gif',
                           '2010-10-20T00:00:00Z')
        self.assertEqual(month['id'], '201010/site-1//apache_pb.gif')
        self.assertEqual(month['counts']['daily.10'], 1)

        self.assertEqual(agg.stats(),
                         dict(recorded=1, failed=0, preallocated=0))

    def test_missing_bucket(self):
        agg = self.make_aggregator()
        self.assertIsNone(agg.bucket(DAILY, 'site-1', '/a', 0))

    def test_series(self):
        agg = self.make_aggregator()
        for ts in ('2010-10-10T05:10:00Z', '2010-10-10T05:50:00Z',
                   '2010-10-11T23:59:00Z'):
            agg.record_hit(ts, 'site-1', 'page-1')

        series = agg.series('site-1', 'page-1', '2010-10-10T00:00:00Z',
                            '2010-10-12T00:00:00Z', 'hour')
        self.assertEqual(len(series), 48)
        self.assertEqual(series[5][1], 2)
        self.assertEqual(series[47][1], 1)

    def test_full_day_matches_bucket_total(self):
        agg = self.make_aggregator()
        start = utc(2010, 10, 10)
        for ii in range(500):
            agg.record(Event(start + timedelta(seconds=ii * 171), 'site-1',
                             '/a'))

        total = agg.bucket(DAILY, 'site-1', '/a', start)['counts']['total']
        end = start + timedelta(days=1)
        self.assertEqual(agg.total('site-1', '/a', start, end, 'hour'), total)
        self.assertEqual(agg.total('site-1', '/a', start, end, 'minute'),
                         total)
        self.assertEqual(agg.total('site-1', '/a', start, end, 'day'), total)

    def test_nonexistent_range(self):
        agg = self.make_aggregator()
        agg.record_hit('2010-10-10T00:00:00Z', 'site-1', '/a')
        self.assertEqual(agg.series('site-1', '/a', '2011-01-01',
                                    '2011-02-01', 'day'), [])
        self.assertEqual(agg.series('site-1', '/nope', '2010-10-10',
                                    '2010-10-11', 'minute'), [])

    def test_empty_range(self):
        agg = self.make_aggregator()
        with self.assertRaises(EmptyRange):
            agg.series('site-1', '/a', '2010-10-10', '2010-10-10')

    def test_invalid_hit(self):
        store = FlakyStore()
        agg = self.make_aggregator(store)
        with self.assertRaises(InvalidEvent):
            agg.record_hit('not a time', 'site-1', '/a')
        with self.assertRaises(InvalidEvent):
            agg.record_hit(0, 'site-1', '')
        self.assertEqual(store.calls, 0)

    def test_transient_failures_retried(self):
        store = FlakyStore(failures=2)
        agg = self.make_aggregator(store)
        agg.record_hit('2010-10-10T00:00:00Z', 'site-1', '/a')
        self.assertEqual(self.sleeps, [0.05, 0.1])
        self.assertEqual(store.calls, 4)
        day = agg.bucket(DAILY, 'site-1', '/a', '2010-10-10')
        self.assertEqual(day['counts']['total'], 1)

    def test_backoff_capped(self):
        store = FlakyStore(failures=8, exc=StoreTimeout)
        agg = self.make_aggregator(store, max_delay=0.3)
        agg.record_hit('2010-10-10T00:00:00Z', 'site-1', '/a')
        self.assertEqual(self.sleeps[:4], [0.05, 0.1, 0.2, 0.3])
        self.assertEqual(max(self.sleeps), 0.3)

    def test_attempts_exhausted(self):
        store = FlakyStore(failures=-1, exc=StoreTimeout,
                           fail_when=lambda key, inc: key.granularity == DAILY)
        agg = self.make_aggregator(store, max_attempts=3)
        with self.assertRaises(StoreTimeout):
            agg.record_hit('2010-10-10T00:00:00Z', 'site-1', '/a')
        self.assertEqual(len(self.sleeps), 2)

        # The monthly increment is independent and still went through.
        month = agg.bucket(MONTHLY, 'site-1', '/a', '2010-10-10')
        self.assertEqual(month['counts']['daily.10'], 1)
        self.assertIsNone(agg.bucket(DAILY, 'site-1', '/a', '2010-10-10'))
        self.assertEqual(agg.stats()['failed'], 1)

    def test_corrupt_not_retried(self):
        store = FlakyStore(failures=1, exc=StoreCorrupt)
        agg = self.make_aggregator(store)
        with self.assertRaises(StoreCorrupt):
            agg.record_hit('2010-10-10T00:00:00Z', 'site-1', '/a')
        self.assertEqual(self.sleeps, [])

    def test_batch_isolation(self):
        store = FlakyStore(failures=-1, exc=StoreCorrupt,
                           fail_when=lambda key, inc: key.page == '/bad')
        agg = self.make_aggregator(store)
        events = [
            Event.at('2010-10-10T01:00:00Z', 'site-1', '/a'),
            Event.at('2010-10-10T02:00:00Z', 'site-1', '/bad'),
            Event.at('2010-10-10T03:00:00Z', 'site-1', ''),
            Event.at('2010-10-10T04:00:00Z', 'site-1', '/a'),
        ]
        failures = agg.record_many(events)
        self.assertEqual([event for event, exc in failures], events[1:3])
        self.assertIsInstance(failures[0][1], StoreCorrupt)
        self.assertIsInstance(failures[1][1], InvalidEvent)
        self.assertEqual(agg.total('site-1', '/a', '2010-10-10',
                                   '2010-10-11'), 2)

    def test_batch_isolation_sql(self):
        agg = self.make_aggregator(SQLStore('sqlite://'))
        events = [
            Event.at('2010-10-10T01:00:00Z', 'site-1', '/a'),
            Event.at('2010-10-10T02:00:00Z', 'site-1', '/\ud800'),
            Event.at('2010-10-10T03:00:00Z', 'site-1', '/a'),
        ]
        failures = agg.record_many(events)
        self.assertEqual(len(failures), 1)
        self.assertIs(failures[0][0], events[1])
        self.assertIsInstance(failures[0][1], InvalidEvent)
        self.assertEqual(agg.total('site-1', '/a', '2010-10-10',
                                   '2010-10-11'), 2)

    def test_rejected_not_retried(self):
        store = FlakyStore(failures=-1, exc=StoreRejected,
                           fail_when=lambda key, inc: key.granularity == DAILY)
        agg = self.make_aggregator(store)
        with self.assertRaises(StoreRejected):
            agg.record_hit('2010-10-10T00:00:00Z', 'site-1', '/a')
        self.assertEqual(self.sleeps, [])
        month = agg.bucket(MONTHLY, 'site-1', '/a', '2010-10-10')
        self.assertEqual(month['counts']['total'], 1)

    def test_async_preallocation_error_logged(self):
        store = BrokenPreallocationStore()
        agg = self.make_aggregator(
            store, sampler=PreallocationSampler(rng=FixedRandom(0)),
            preallocate_async=True)
        with self.assertLogs('tally.aggregator', 'ERROR') as cm:
            agg.record_hit('2010-10-10T10:00:00Z', 'site-1', '/a')
            agg.close()
        self.assertIn('Pre-allocation raised RuntimeError: disk on fire',
                      cm.output[0])
        self.assertEqual(agg.stats()['recorded'], 1)

    def test_preallocation(self):
        agg = self.make_aggregator(
            sampler=PreallocationSampler(rng=FixedRandom(0)))
        agg.record_hit('2010-10-31T10:00:00Z', 'site-1', '/a')

        day = agg.bucket(DAILY, 'site-1', '/a', '2010-11-01')
        self.assertEqual(len(day['counts']), 1465)
        self.assertEqual(sum(day['counts'].values()), 0)
        month = agg.bucket(MONTHLY, 'site-1', '/a', '2010-11-01')
        self.assertEqual(len(month['counts']), 32)
        self.assertEqual(agg.stats()['preallocated'], 2)

        # A later increment lands on top of the pre-allocated zeros.
        agg.record_hit('2010-11-01T00:05:00Z', 'site-1', '/a')
        day = agg.bucket(DAILY, 'site-1', '/a', '2010-11-01')
        self.assertEqual(day['counts']['minute.0.5'], 1)
        self.assertEqual(day['counts']['total'], 1)

    def test_volume_estimator(self):
        seen = []

        def estimator(site, page):
            seen.append((site, page))
            return 1

        agg = self.make_aggregator(
            sampler=PreallocationSampler(rng=FixedRandom(0.5)),
            expected_daily_volume=1000000, volume_estimator=estimator)
        agg.record_hit('2010-10-10T10:00:00Z', 'site-1', '/a')
        self.assertEqual(seen, [('site-1', '/a')])
        self.assertIsNotNone(agg.bucket(DAILY, 'site-1', '/a', '2010-10-11'))

    def test_preallocation_failure_swallowed(self):
        store = FlakyStore(failures=-1,
                           fail_when=lambda key, inc: not inc)
        agg = self.make_aggregator(
            store, sampler=PreallocationSampler(rng=FixedRandom(0)))
        agg.record_hit('2010-10-10T10:00:00Z', 'site-1', '/a')
        self.assertEqual(self.sleeps, [])
        self.assertEqual(agg.stats(),
                         dict(recorded=1, failed=0, preallocated=0))

    def test_async_preallocation(self):
        agg = self.make_aggregator(
            sampler=PreallocationSampler(rng=FixedRandom(0)),
            preallocate_async=True)
        agg.record_hit('2010-10-10T10:00:00Z', 'site-1', '/a')
        agg.close()
        self.assertIsNotNone(agg.bucket(DAILY, 'site-1', '/a', '2010-10-11'))

        # Once closed, pre-allocation is skipped rather than failing hits.
        agg.record_hit('2010-10-12T10:00:00Z', 'site-1', '/a')
        self.assertIsNone(agg.bucket(DAILY, 'site-1', '/a', '2010-10-13'))

    def test_concurrent_increments(self):
        agg = self.make_aggregator()
        event = Event.at('2010-10-10T10:10:10Z', 'site-1', '/a')

        def worker():
            for ii in range(250):
                agg.record(event)

        threads = [Thread(target=worker) for ii in range(8)]
        for th in threads:
            th.start()
        for th in threads:
            th.join()

        day = agg.bucket(DAILY, 'site-1', '/a', '2010-10-10')
        self.assertEqual(day['counts']['minute.10.10'], 2000)
        self.assertEqual(day['counts']['total'], 2000)

    def test_handle(self):
        store = MemoryStore()
        agg = self.make_aggregator(store)
        agg.handle(HitRecord(timestamp='1286668800.0000', site='site-1',
                             page='/a'), 'ptr-1')
        agg.handle(HitRecord(timestamp='garbage', site='site-1', page='/a'),
                   'ptr-2')
        self.assertEqual(agg.get_pointer(), 'ptr-2')
        self.assertEqual(store.get_pointer(), 'ptr-2')
        self.assertEqual(agg.total('site-1', '/a', '2010-10-10',
                                   '2010-10-11'), 1)

    def test_handle_skips_corrupt(self):
        store = FlakyStore(failures=-1, exc=StoreCorrupt)
        agg = self.make_aggregator(store)
        agg.handle(HitRecord(timestamp='1286668800', site='site-1',
                             page='/a'), 'ptr-1')
        self.assertEqual(agg.get_pointer(), 'ptr-1')

    def test_handle_advances_past_partial_failure(self):
        store = FlakyStore(
            failures=-1, exc=StoreTimeout,
            fail_when=lambda key, inc: key.granularity == MONTHLY)
        agg = self.make_aggregator(store, max_attempts=2)
        agg.handle(HitRecord(timestamp='1286668800', site='site-1',
                             page='/a'), 'ptr-1')
        self.assertEqual(agg.get_pointer(), 'ptr-1')
        self.assertEqual(store.get_pointer(), 'ptr-1')
        self.assertEqual(len(self.sleeps), 1)

        # Replaying from the stored pointer can't count the daily hit twice.
        day = agg.bucket(DAILY, 'site-1', '/a', '2010-10-10')
        self.assertEqual(day['counts']['total'], 1)
        self.assertEqual(agg.stats()['failed'], 1)

    def test_pointer_resumed_from_store(self):
        store = MemoryStore()
        store.update_pointer('somewhere:42')
        agg = self.make_aggregator(store)
        self.assertEqual(agg.get_pointer(), 'somewhere:42')

    def test_corrupt_bucket_on_query(self):
        store = MemoryStore()
        agg = self.make_aggregator(store)
        agg.record_hit('2010-10-10T00:00:00Z', 'site-1', '/a')
        key = store.keys()[0]
        store.corrupt(key, 'hourly.0', 'lots')
        with self.assertRaises(StoreCorrupt):
            agg.series('site-1', '/a', '2010-10-10', '2010-10-11')
