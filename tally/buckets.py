"""
This module maps events onto the bucket records that hold their counters.

There are two bucket owners. A *daily* bucket is keyed by (date, site, page)
and holds a day total, 24 hourly counters and 24x60 minute counters laid out
hour-major. A *monthly* bucket is keyed by (month, site, page) and holds a
month total and a counter for each day of the month. Each is implemented by a
``Rollup`` object below, and ``BucketKeyResolver`` dispatches between them.
"""

import calendar
from collections import namedtuple
from datetime import date, datetime, timedelta

from .errors import InvalidEvent
from .util import to_utc, midnight


DAILY = 'daily'
MONTHLY = 'monthly'

granularities = (DAILY, MONTHLY)


# Valid index ranges for each kind of counter field, one (low, high) pair per
# index, inclusive.
_field_bounds = {
    'total': (),
    'hourly': ((0, 23),),
    'minute': ((0, 23), (0, 59)),
    'daily': ((1, 31),),
}


class FieldPath(namedtuple('FieldPath', ['kind', 'indices'])):
    """
    Typed address of one counter inside a bucket, like ``minute.23.59``.
    Construction validates the kind and the index ranges, so an invalid path
    can't be formed by accident.
    """
    __slots__ = ()

    def __new__(cls, kind, indices=()):
        try:
            bounds = _field_bounds[kind]
        except (KeyError, TypeError):
            raise ValueError('invalid field kind: %r' % (kind,))
        indices = tuple(int(i) for i in indices)
        if len(indices) != len(bounds):
            raise ValueError('%s field takes %d indices, got %r' %
                             (kind, len(bounds), indices))
        for ii, (low, high) in zip(indices, bounds):
            if not low <= ii <= high:
                raise ValueError('index %d out of range for %s field' %
                                 (ii, kind))
        return super(FieldPath, cls).__new__(cls, kind, indices)

    def __str__(self):
        return '.'.join([self.kind] + [str(ii) for ii in self.indices])

    @classmethod
    def parse(cls, s):
        """
        Parse the dotted string form of a field path.

        :param s:
            Dotted path, like ``hourly.7`` or ``total``.
        :type s:
            str
        :raises ValueError:
            If the string does not name a valid counter field.
        """
        if not isinstance(s, str) or not s:
            raise ValueError('invalid field path: %r' % (s,))
        parts = s.split('.')
        try:
            indices = [int(p) for p in parts[1:]]
        except ValueError:
            raise ValueError('invalid field path: %r' % (s,))
        return cls(parts[0], indices)


TOTAL = FieldPath('total')


def hourly(hour):
    return FieldPath('hourly', (hour,))


def minute(hour, minute):
    return FieldPath('minute', (hour, minute))


def daily(day):
    return FieldPath('daily', (day,))


Coordinates = namedtuple('Coordinates', ['hour', 'minute', 'day'])


class BucketKey(namedtuple('BucketKey',
                           ['granularity', 'site', 'page', 'period'])):
    """
    Identifies one bucket record. ``period`` is the date the bucket starts
    on: the day itself for daily buckets, the first of the month for monthly
    buckets.
    """
    __slots__ = ()

    period_formats = {
        DAILY: '%Y%m%d',
        MONTHLY: '%Y%m',
    }

    @property
    def id(self):
        """
        String form of the key, like ``20101010/site-1//apache_pb.gif``.
        """
        period = self.period.strftime(self.period_formats[self.granularity])
        return '%s/%s/%s' % (period, self.site, self.page)

    def __str__(self):
        return self.id


class Bucket(namedtuple('Bucket', ['key', 'counts'])):
    """
    A bucket record as read back from a store. ``counts`` maps ``FieldPath``
    to int; fields that are absent count as zero.
    """
    __slots__ = ()

    def get(self, path):
        return self.counts.get(path, 0)

    def to_dict(self):
        return {
            'id': self.key.id,
            'granularity': self.key.granularity,
            'site': self.key.site,
            'page': self.key.page,
            'period': self.key.period.isoformat(),
            'counts': {str(path): count
                       for path, count in sorted(self.counts.items())},
        }


class Rollup(object):
    """
    Superclass of the bucket owners. Subclasses define the period a timestamp
    falls in, the counters a bucket holds, and which of those an event bumps.
    """
    granularity = None

    def __init__(self):
        self._defaults = None

    def get_bucket(self, event):
        return BucketKey(self.granularity, event.site, event.page,
                         self.period_for(event.timestamp))

    def defaults(self):
        """
        Return every counter field of a bucket, mapped to zero. A fresh dict
        is returned each time.
        """
        if self._defaults is None:
            self._defaults = dict.fromkeys(self.fields(), 0)
        return dict(self._defaults)

    def periods(self, first, last):
        """
        Yield each period start from the period containing ``first`` through
        the period containing ``last``, inclusive.
        """
        period = self.period_for(first)
        last = self.period_for(last)
        while period <= last:
            yield period
            period = self.next_period(period)

    def start_of(self, period):
        return midnight(period)

    def end_of(self, period):
        return midnight(self.next_period(period))


class DailyRollup(Rollup):
    granularity = DAILY
    units = ('minute', 'hour')

    def period_for(self, ts):
        if isinstance(ts, datetime):
            return to_utc(ts).date()
        return ts

    def next_period(self, period):
        return period + timedelta(days=1)

    def fields(self):
        ret = [TOTAL]
        ret.extend(hourly(hh) for hh in range(24))
        for hh in range(24):
            ret.extend(minute(hh, mm) for mm in range(60))
        return ret

    def increments_for(self, event):
        ts = event.timestamp
        return {
            TOTAL: 1,
            hourly(ts.hour): 1,
            minute(ts.hour, ts.minute): 1,
        }

    def slots(self, period, unit):
        """
        Yield ``(field, start)`` pairs for each sub-bucket of the given unit
        in the bucket starting on ``period``, in time order.
        """
        start = self.start_of(period)
        if unit == 'hour':
            for hh in range(24):
                yield hourly(hh), start + timedelta(hours=hh)
        elif unit == 'minute':
            for hh in range(24):
                for mm in range(60):
                    yield (minute(hh, mm),
                           start + timedelta(hours=hh, minutes=mm))
        else:
            raise ValueError('daily buckets have no %r slots' % unit)


class MonthlyRollup(Rollup):
    granularity = MONTHLY
    units = ('day',)

    def period_for(self, ts):
        if isinstance(ts, datetime):
            ts = to_utc(ts)
        return date(ts.year, ts.month, 1)

    def next_period(self, period):
        if period.month == 12:
            return date(period.year + 1, 1, 1)
        return date(period.year, period.month + 1, 1)

    def fields(self):
        return [TOTAL] + [daily(dd) for dd in range(1, 32)]

    def increments_for(self, event):
        return {
            TOTAL: 1,
            daily(event.timestamp.day): 1,
        }

    def slots(self, period, unit):
        if unit != 'day':
            raise ValueError('monthly buckets have no %r slots' % unit)
        start = self.start_of(period)
        num_days = calendar.monthrange(period.year, period.month)[1]
        for dd in range(1, num_days + 1):
            yield daily(dd), start + timedelta(days=dd - 1)


default_rollups = {
    DAILY: DailyRollup(),
    MONTHLY: MonthlyRollup(),
}


def validate_dimensions(site, page):
    for name, value in (('site', site), ('page', page)):
        if not isinstance(value, str) or not value:
            raise InvalidEvent('%s must be a non-empty string, got %r' %
                               (name, value))
        try:
            value.encode('utf-8')
        except UnicodeEncodeError:
            raise InvalidEvent('%s is not valid unicode: %r' % (name, value))


class BucketKeyResolver(object):
    """
    Resolves events to bucket keys and to the coordinates of the counters
    inside those buckets. Pure: the same event always yields the same keys.
    """

    def __init__(self, rollups=None):
        self.rollups = rollups or default_rollups

    def rollup(self, granularity):
        try:
            return self.rollups[granularity]
        except KeyError:
            raise ValueError('invalid granularity: %r' % (granularity,))

    def validate(self, event):
        """
        Check that an event is usable, returning it with its timestamp
        normalized to UTC.

        :raises InvalidEvent:
            If the site or page is empty or the timestamp isn't a datetime.
        """
        validate_dimensions(event.site, event.page)
        if not isinstance(event.timestamp, datetime):
            raise InvalidEvent('timestamp must be a datetime, got %r' %
                               (event.timestamp,))
        return event._replace(timestamp=to_utc(event.timestamp))

    def resolve(self, event, granularity):
        rollup = self.rollup(granularity)
        return rollup.get_bucket(self.validate(event))

    def coordinates(self, event):
        ts = self.validate(event).timestamp
        return Coordinates(hour=ts.hour, minute=ts.minute, day=ts.day)
