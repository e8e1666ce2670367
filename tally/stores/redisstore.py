"""
Redis store. Each bucket is a hash whose fields are counter paths like
``minute.23.59``, and a sorted set per (granularity, site, page) indexes the
buckets by period so range reads don't need to scan the keyspace.

``HINCRBY`` is atomic per field and the increments for one bucket are sent in
a single ``MULTI`` transaction, so concurrent upserts never lose counts.
Defaults are written with ``HSETNX``, which leaves existing counters alone,
so a pre-allocation racing an increment on the same bucket is harmless.
"""

import logging
from contextlib import contextmanager
from datetime import date

import redis

from ..buckets import BucketKey
from ..errors import StoreUnavailable, StoreTimeout, StoreCorrupt, \
    StoreRejected
from .base import AggregationStore


log = logging.getLogger(__name__)


DEFAULT_PREFIX = 'tally'


def make_redis(kwargs=None, **defaults):
    if kwargs is None:
        kwargs = {}
    for k in defaults:
        if k not in kwargs:
            kwargs[k] = defaults[k]
    return redis.Redis(**kwargs)


class RedisStore(AggregationStore):

    def __init__(self, prefix=DEFAULT_PREFIX, redis_kwargs=None, db=None):
        """
        :param prefix:
            Prefix for every key this store writes.
        :param redis_kwargs:
            Keyword arguments for ``redis.Redis``.
        :param db:
            An existing client to use instead of building one.
        """
        self.prefix = prefix
        self.db = db or make_redis(redis_kwargs, socket_timeout=5)

    @classmethod
    def from_url(cls, url, prefix=DEFAULT_PREFIX):
        return cls(prefix=prefix, db=redis.Redis.from_url(url))

    @contextmanager
    def translate_errors(self, key=None):
        try:
            yield
        except redis.TimeoutError as e:
            raise StoreTimeout(str(e)) from e
        except redis.ConnectionError as e:
            raise StoreUnavailable(str(e)) from e
        except redis.ResponseError as e:
            # WRONGTYPE and non-integer hash values land here.
            raise StoreCorrupt('%s: %s' % (key.id if key else self.prefix,
                                           e)) from e
        except (redis.DataError, UnicodeError) as e:
            raise StoreRejected('%s: %s' % (key.id if key else self.prefix,
                                            e)) from e

    def hash_key(self, key):
        # The site is length-prefixed, so no (site, page) split of the same
        # string can name another bucket.
        period = key.period.strftime(key.period_formats[key.granularity])
        return '%s:%s:%s:%d:%s%s' % (self.prefix, key.granularity, period,
                                      len(key.site), key.site, key.page)

    def index_key(self, granularity, site, page):
        return '%s:index:%s:%d:%s%s' % (self.prefix, granularity,
                                        len(site), site, page)

    def score_for(self, period):
        return period.toordinal()

    def upsert_increment(self, key, increments, defaults):
        name = self.hash_key(key)
        with self.translate_errors(key):
            exists = self.db.exists(name)
            pipe = self.db.pipeline(transaction=True)
            if not exists:
                for path, value in defaults.items():
                    pipe.hsetnx(name, str(path), value)
                log.debug('Creating bucket %s', key.id)
            for path, n in increments.items():
                if n:
                    pipe.hincrby(name, str(path), n)
            pipe.zadd(self.index_key(key.granularity, key.site, key.page),
                      {name: self.score_for(key.period)})
            pipe.execute()

    def read(self, key, fields=None):
        name = self.hash_key(key)
        with self.translate_errors(key):
            if fields is None:
                raw = self.db.hgetall(name)
                if not raw:
                    return None
            else:
                if not self.db.exists(name):
                    return None
                fields = list(fields)
                values = self.db.hmget(name, [str(path) for path in fields])
                raw = {path: value for path, value in zip(fields, values)
                       if value is not None}
        return self.make_bucket(key, self.decode(raw), fields)

    def range_read(self, site, page, granularity, start, end):
        index = self.index_key(granularity, site, page)
        with self.translate_errors():
            names = self.db.zrangebyscore(index, self.score_for(start),
                                          self.score_for(end),
                                          withscores=True)
            pipe = self.db.pipeline(transaction=False)
            for name, score in names:
                pipe.hgetall(name)
            docs = pipe.execute()

        ret = []
        for (name, score), raw in zip(names, docs):
            if not raw:
                # Index entry for a bucket that has since been expired or
                # deleted by a retention policy.
                continue
            key = BucketKey(granularity, site, page,
                            date.fromordinal(int(score)))
            ret.append(self.make_bucket(key, self.decode(raw)))
        return ret

    def decode(self, raw):
        ret = {}
        for name, value in raw.items():
            if isinstance(name, bytes):
                name = name.decode('utf-8', 'replace')
            ret[name] = value
        return ret

    def pointer_key(self):
        return '%s:pointer' % self.prefix

    def get_pointer(self):
        with self.translate_errors():
            ptr = self.db.get(self.pointer_key())
        if isinstance(ptr, bytes):
            ptr = ptr.decode('utf-8')
        return ptr

    def update_pointer(self, ptr):
        if ptr is None:
            return
        with self.translate_errors():
            self.db.set(self.pointer_key(), ptr)
