"""
This module contains Tally store classes, each an adapter from the
``AggregationStore`` interface onto some external engine.

A store class should implement at least the following methods, where ``key``
is a ``tally.buckets.BucketKey``.

    def upsert_increment(self, key, increments, defaults):
        pass

    def read(self, key, fields=None):
        pass

    def range_read(self, site, page, granularity, start, end):
        pass

"""

from .base import AggregationStore
from .memory import MemoryStore


def store_for_url(url, **kwargs):
    """
    Build a store from a URL: ``memory://`` for an in-process store,
    ``redis://`` (or ``rediss://``, ``unix://``) for Redis, anything else is
    handed to SQLAlchemy.
    """
    if url is None or url == 'memory://':
        return MemoryStore()
    if url.split('://', 1)[0] in ('redis', 'rediss', 'unix'):
        from .redisstore import RedisStore
        return RedisStore.from_url(url, **kwargs)
    from .sql import SQLStore
    return SQLStore(url, **kwargs)
