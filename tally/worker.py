import time
import logging

from .record import Record


log = logging.getLogger(__name__)


class Worker(object):
    """
    Replays records from a log into an aggregator. The aggregator keeps the
    resume pointer, so a restarted worker picks up after the last record it
    counted.
    """

    def __init__(self, log, aggregator, stats_every=50):
        self.log = log
        self.aggregator = aggregator
        self.stats_every = stats_every

        self.last_live_ts = None
        self.last_record_ts = None
        self.last_num_records = None

    def dump_stats(self, num_records, record_ts):
        live_ts = time.time()
        if self.last_live_ts:
            live_elapsed = live_ts - self.last_live_ts
            record_elapsed = record_ts - self.last_record_ts

            if live_elapsed <= 0:
                return

            record_rate = ((num_records - self.last_num_records) /
                           float(live_elapsed))

            clock_rate = float(record_elapsed) / float(live_elapsed)
            secs_behind = live_ts - record_ts
            clock_eta = secs_behind / clock_rate if clock_rate > 0 else 0

            log.info('Processed %d records, %0.1f /sec, %0.1fx realtime, '
                     '%d secs behind, ETA: %0.1f seconds, %r',
                     num_records, record_rate, clock_rate, secs_behind,
                     clock_eta, self.aggregator.stats())

        self.last_live_ts = live_ts
        self.last_record_ts = record_ts
        self.last_num_records = num_records

    def run(self, resume=True, **kwargs):
        log.info('Worker started processing.')

        if resume:
            kwargs['process_from'] = self.aggregator.get_pointer()
            log.info('Resuming from %s', kwargs['process_from'])

        for ii, (vals, pointer) in enumerate(self.log.process(**kwargs)):
            record = Record.from_list(vals)
            self.aggregator.handle(record, pointer)
            if (ii % self.stats_every) == 0:
                try:
                    record_ts = int(float(record.timestamp))
                except ValueError:
                    continue
                self.dump_stats(ii, record_ts)

        log.info('Worker finished processing.')
