from .errors import InvalidEvent
from .event import Event


log_version = 1


class Record(object):
    base_fields = ('timestamp', 'site', 'page')
    fields = ()

    def __init__(self, **kwargs):
        for field in self.base_fields + self.fields:
            setattr(self, field, kwargs.get(field, ''))

    def to_list(self):
        return ([str(log_version), self.key] +
                [getattr(self, field) for field in
                 self.base_fields + self.fields])

    @staticmethod
    def from_list(vals):
        version = vals[0]
        record_type = vals[1]
        rest = vals[2:]

        assert int(version) == log_version

        cls = _record_types[record_type]
        kwargs = {field: val for field, val
                  in zip(cls.base_fields + cls.fields, rest)}
        return cls(**kwargs)

    def __eq__(self, other):
        return (isinstance(other, Record) and
                self.to_list() == other.to_list())

    def __repr__(self):
        return '<%s %r>' % (self.__class__.__name__, self.to_list()[2:])


class HitRecord(Record):
    key = 'hit'

    def to_event(self):
        """
        Convert this log record into an ``Event``.

        :raises InvalidEvent:
            If the timestamp can't be parsed.
        """
        try:
            return Event.at(self.timestamp, self.site, self.page)
        except (TypeError, ValueError, OverflowError) as e:
            raise InvalidEvent('bad timestamp %r: %s' % (self.timestamp, e))


_record_types = {cls.key: cls for cls in (HitRecord,)}
