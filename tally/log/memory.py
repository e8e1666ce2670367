import logging
from threading import Lock

log = logging.getLogger(__name__)


class MemoryLog(object):
    """
    An in-memory log, for tests and for feeding a worker in the same process.
    Records are kept until ``purge()``, so processing can resume from a
    pointer of the form ``memory:<index>``.
    """
    pointer_prefix = 'memory:'

    def __init__(self):
        self.records = []
        self.lock = Lock()

    def write(self, *records):
        log.debug('Writing records: %r', records)
        with self.lock:
            self.records.extend(records)

    def index_for(self, pointer):
        if not pointer:
            return 0
        if not pointer.startswith(self.pointer_prefix):
            raise ValueError('not a memory log pointer: %r' % pointer)
        return int(pointer[len(self.pointer_prefix):])

    def process(self, process_from=None, **kwargs):
        """
        Yield ``(record, pointer)`` for each record written so far, starting
        after ``process_from``.
        """
        with self.lock:
            to_process = list(self.records)
        start = self.index_for(process_from)
        log.debug('Playing back %d records.', len(to_process) - start)
        for ii in range(start, len(to_process)):
            yield to_process[ii], '%s%d' % (self.pointer_prefix, ii + 1)

    def purge(self):
        log.debug('Purging log.')
        with self.lock:
            self.records = []
