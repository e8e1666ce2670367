from collections import namedtuple

from .util import to_utc


class Event(namedtuple('Event', ['timestamp', 'site', 'page'])):
    """
    A single hit on a page of a site. Events are never persisted as-is: they
    are planned into counter increments and then discarded.

    ``timestamp`` is always an aware UTC datetime. Use ``Event.at()`` to
    build one from a POSIX timestamp, a string, or a naive datetime.
    """
    __slots__ = ()

    @classmethod
    def at(cls, timestamp, site, page):
        return cls(to_utc(timestamp), site, page)

    def __str__(self):
        return '%s %s%s' % (self.timestamp.isoformat(), self.site, self.page)
