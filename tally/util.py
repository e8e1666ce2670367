"""
Various utility functions used by Tally. It is not expected that these will
be used externally.
"""

import numbers
from datetime import datetime, date

import pytz


"""
A 1 pixel transparent GIF as a bytestring. For use as a tracking "beacon" in an
HTML document.
"""
transparent_pixel = (
    b'GIF89a'
    b'\x01\x00\x01\x00\x80\x00\x00\xff\xff\xff\x00\x00\x00!\xf9\x04'
    b'\x00\x00\x00\x00\x00,\x00\x00\x00\x00\x01\x00\x01\x00\x00\x02'
    b'\x02D\x01\x00;')


def to_utc(value):
    """
    Normalize a timestamp into a timezone-aware UTC datetime.

    :param value:
        A datetime (naive values are taken to be UTC already), a date
        (midnight UTC), a POSIX timestamp, or a string holding either a POSIX
        timestamp or an ISO-8601 datetime.
    :returns:
        Aware datetime in UTC.
    :rtype:
        datetime
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return pytz.utc.localize(value)
        return value.astimezone(pytz.utc)

    if isinstance(value, date):
        return pytz.utc.localize(datetime(value.year, value.month, value.day))

    if isinstance(value, bool):
        raise TypeError('not a timestamp: %r' % value)

    if isinstance(value, numbers.Real):
        return datetime.fromtimestamp(float(value), pytz.utc)

    if isinstance(value, str):
        try:
            return datetime.fromtimestamp(float(value), pytz.utc)
        except ValueError:
            pass
        s = value.strip()
        if s.endswith('Z'):
            s = s[:-1] + '+00:00'
        return to_utc(datetime.fromisoformat(s))

    raise TypeError('not a timestamp: %r' % value)


def to_timestamp(dt):
    """
    Format a datetime as the POSIX timestamp string written into logs.
    """
    return '%0.4f' % to_utc(dt).timestamp()


def midnight(day):
    "Return the aware UTC datetime at the start of the given date."
    return pytz.utc.localize(datetime(day.year, day.month, day.day))


def decode_url(raw):
    """
    Decode a URL into a unicode string. Expected to be UTF-8.

    :param raw:
        Raw URL, either bytes or an already-decoded string.
    :returns:
        Decoded URL.
    :rtype:
        str
    """
    if isinstance(raw, bytes):
        return raw.decode('utf-8', 'replace')
    return raw
