"""
Hit logging over a Redis list, for web frontends that shouldn't touch the
worker's log files directly. ``RemoteLog`` pushes JSON-encoded batches onto
the list; ``RemoteLogServer`` (the ``tally-log-server`` command) pops them and
appends them to a local log for the worker to consume.
"""

import argparse
import logging
from threading import Event

import redis
import simplejson as json

from tally.log.timerotating import TimeRotatingLog
from tally.stores.redisstore import make_redis


log = logging.getLogger(__name__)


DEFAULT_REDIS_KEY = 'tally:log:queue'

STOP = 'STOP'


class RemoteLog(object):

    def __init__(self, key=DEFAULT_REDIS_KEY, redis_kwargs=None, db=None):
        self.key = key
        self.db = db or make_redis(redis_kwargs, socket_timeout=1)

    def write(self, *records):
        self.db.rpush(self.key, json.dumps(records))

    def send_command(self, command):
        self.db.rpush(self.key, command)


class RemoteLogServer(object):
    """
    Moves batches from the Redis list into ``log``. Stops when it pops the
    ``STOP`` command or when ``killed`` is set.
    """
    # Seconds to block waiting for a batch before checking ``killed``.
    pop_timeout = 1
    # Maximum number of queued batches appended to the log in one write.
    drain_limit = 100

    def __init__(self, log, key=DEFAULT_REDIS_KEY, redis_kwargs=None,
                 db=None):
        self.log = log
        self.key = key
        self.db = db or make_redis(redis_kwargs)
        self.killed = Event()

    def decode(self, entry):
        """
        Decode one queue entry into a list of records, or None for the stop
        command. Undecodable entries are logged and dropped.
        """
        if isinstance(entry, bytes):
            entry = entry.decode('utf-8')
        if entry == STOP:
            return None
        try:
            records = json.loads(entry)
        except ValueError:
            log.error('Dropping undecodable entry: %r', entry)
            return []
        return records

    def drain(self, first):
        """
        Collect ``first`` plus whatever else is already queued, up to
        ``drain_limit`` entries. Returns ``(records, stop)``.
        """
        records = []
        entry = first
        num_entries = 0
        while entry is not None:
            batch = self.decode(entry)
            if batch is None:
                return records, True
            records.extend(batch)
            num_entries += 1
            if num_entries >= self.drain_limit:
                break
            entry = self.db.lpop(self.key)
        return records, False

    def run(self):
        log.info('Consuming %s into %s', self.key, self.log.path)
        stop = False
        while not (stop or self.killed.is_set()):
            try:
                popped = self.db.blpop(self.key, timeout=self.pop_timeout)
            except redis.ConnectionError as e:
                log.warning('Lost connection to Redis, retrying: %s', e)
                self.killed.wait(self.pop_timeout)
                continue
            if popped is None:
                continue
            records, stop = self.drain(popped[1])
            if records:
                self.log.write(*records)
        log.info('Stopped consuming %s', self.key)

    def stop(self):
        self.killed.set()


def server(argv=None):
    parser = argparse.ArgumentParser(
        description='Move hit records from a Redis queue into a log.')
    parser.add_argument('-p', '--path', default='log/tally.log',
                        help='Path of the TimeRotatingLog to append to')
    parser.add_argument('-k', '--key', default=DEFAULT_REDIS_KEY,
                        help='Redis list to consume')
    parser.add_argument('-u', '--url', default=None,
                        help='Redis URL, defaults to localhost')
    args = parser.parse_args(argv)

    db = redis.Redis.from_url(args.url) if args.url else None
    log_server = RemoteLogServer(TimeRotatingLog(args.path), args.key, db=db)
    log_server.run()
