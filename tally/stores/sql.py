"""
SQL store, on top of SQLAlchemy.

Each granularity gets one wide table with a row per bucket and an integer
column per counter, so a bucket is created in one piece (every counter set to
zero by the column defaults) and an increment is a single-row ``UPDATE ...
SET col = col + n``, which the database applies atomically. The composite
primary key on (site, page, period) provides the ordering range reads scan.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import MetaData, Table, Column, types, create_engine, \
    select, exc
from sqlalchemy.sql import and_

from ..buckets import BucketKey, default_rollups
from ..errors import StoreUnavailable, StoreTimeout, StoreRejected
from .base import AggregationStore


log = logging.getLogger(__name__)


table_names = {
    'daily': 'daily_buckets',
    'monthly': 'monthly_buckets',
}


def column_name(path):
    """
    Name of the column holding a counter field, like ``minute_23_59``.
    """
    return '_'.join([path.kind] + [str(ii) for ii in path.indices])


def bucket_table(name, metadata, rollup):
    columns = [
        Column('site', types.String(255), primary_key=True),
        Column('page', types.String(255), primary_key=True),
        Column('period', types.Date, primary_key=True),
    ]
    for path in rollup.fields():
        columns.append(Column(column_name(path), types.Integer,
                              nullable=False, server_default='0'))
    return Table(name, metadata, *columns, mysql_engine='InnoDB')


class SQLStore(AggregationStore):

    # Number of times to go back to the UPDATE after losing a race to insert
    # the same bucket.
    insert_attempts = 3

    def __init__(self, sqlalchemy_url, pool_recycle=3600, rollups=None,
                 **engine_kwargs):
        rollups = rollups or default_rollups
        self.engine = create_engine(sqlalchemy_url, pool_recycle=pool_recycle,
                                    **engine_kwargs)
        self.metadata = MetaData()

        self.tables = {}
        self.paths = {}
        for granularity, rollup in rollups.items():
            self.tables[granularity] = bucket_table(table_names[granularity],
                                                    self.metadata, rollup)
            self.paths[granularity] = {column_name(path): path
                                       for path in rollup.fields()}

        self.pointer_table = Table(
            'pointer',
            self.metadata,
            Column('pointer', types.String(255), primary_key=True),
            mysql_engine='InnoDB')

        with self.translate_errors():
            self.metadata.create_all(self.engine)

    @contextmanager
    def translate_errors(self):
        try:
            yield
        except exc.TimeoutError as e:
            raise StoreTimeout(str(e)) from e
        except (exc.OperationalError, exc.InterfaceError,
                exc.DisconnectionError) as e:
            raise StoreUnavailable(str(e)) from e
        except (exc.SQLAlchemyError, UnicodeError) as e:
            # Statement errors and values the driver can't encode.
            raise StoreRejected(str(e)) from e

    def criteria_for(self, table, key):
        return and_(table.c.site == key.site,
                    table.c.page == key.page,
                    table.c.period == key.period)

    def column_for(self, table, path):
        try:
            return table.c[column_name(path)]
        except KeyError:
            raise ValueError('no %s column in %s' % (path, table.name))

    def upsert_increment(self, key, increments, defaults):
        t = self.tables[key.granularity]
        whereclause = self.criteria_for(t, key)

        update_dict = {}
        for path, n in increments.items():
            col = self.column_for(t, path)
            if n:
                update_dict[col.name] = col + n

        # Columns default to zero on the database side, so only key columns
        # and non-zero starting values need to go into the INSERT.
        insert_dict = dict(site=key.site, page=key.page, period=key.period)
        for path in set(defaults) | set(increments):
            value = defaults.get(path, 0) + increments.get(path, 0)
            if value:
                insert_dict[self.column_for(t, path).name] = value

        with self.translate_errors():
            for attempt in range(self.insert_attempts):
                try:
                    with self.engine.begin() as conn:
                        if update_dict:
                            q = t.update().values(**update_dict).\
                                where(whereclause)
                            if conn.execute(q).rowcount:
                                return
                        else:
                            q = select(t.c.site).where(whereclause)
                            if conn.execute(q).first() is not None:
                                return
                        conn.execute(t.insert().values(**insert_dict))
                        log.debug('Created bucket %s', key.id)
                    return
                except exc.IntegrityError:
                    log.info('Lost race creating bucket %s, retrying update',
                             key.id)

        raise StoreUnavailable('could not upsert bucket %s after %d attempts' %
                               (key.id, self.insert_attempts))

    def row_to_bucket(self, key, paths, row, fields=None):
        raw = {}
        for name, value in row._mapping.items():
            if name in paths:
                raw[paths[name]] = value
        return self.make_bucket(key, raw, fields)

    def read(self, key, fields=None):
        t = self.tables[key.granularity]
        paths = self.paths[key.granularity]
        if fields is None:
            cols = [t.c[name] for name in paths]
        else:
            fields = set(fields)
            cols = [self.column_for(t, path) for path in fields]

        q = select(*cols).where(self.criteria_for(t, key))
        with self.translate_errors():
            with self.engine.connect() as conn:
                row = conn.execute(q).first()
        if row is None:
            return None
        return self.row_to_bucket(key, paths, row, fields)

    def range_read(self, site, page, granularity, start, end):
        t = self.tables[granularity]
        paths = self.paths[granularity]
        q = select(t).\
            where(t.c.site == site).\
            where(t.c.page == page).\
            where(t.c.period >= start).\
            where(t.c.period <= end).\
            order_by(t.c.period)

        with self.translate_errors():
            with self.engine.connect() as conn:
                rows = conn.execute(q).all()

        ret = []
        for row in rows:
            key = self.key_for(granularity, row)
            ret.append(self.row_to_bucket(key, paths, row))
        return ret

    def key_for(self, granularity, row):
        return BucketKey(granularity, row.site, row.page, row.period)

    def update_pointer(self, ptr):
        if ptr is None:
            return
        with self.translate_errors():
            with self.engine.begin() as conn:
                q = self.pointer_table.update().values(pointer=ptr)
                r = conn.execute(q)
                if r.rowcount == 0:
                    q = self.pointer_table.insert().values(pointer=ptr)
                    conn.execute(q)

    def get_pointer(self):
        q = select(self.pointer_table.c.pointer)
        with self.translate_errors():
            with self.engine.connect() as conn:
                return conn.execute(q).scalar()
