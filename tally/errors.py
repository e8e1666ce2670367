"""
Exceptions raised by Tally. Store adapters translate their engine's errors
into the ``StoreError`` subclasses here, so the aggregator can decide what to
retry without knowing which engine it is talking to.
"""


class TallyError(Exception):
    retryable = False


class InvalidEvent(TallyError):
    """
    An event (or a query dimension) is malformed: empty site or page, or an
    unusable timestamp. Raised before any store call is made.
    """


class EmptyRange(TallyError):
    """
    A range query was requested with an end that is not after its start.
    """


class StoreError(TallyError):
    pass


class StoreUnavailable(StoreError):
    retryable = True


class StoreTimeout(StoreError):
    retryable = True


class StoreRejected(StoreError):
    """
    The store refused a value it was handed, such as a page that can't be
    encoded for it. Retrying the same call would fail the same way.
    """


class StoreCorrupt(StoreError):
    """
    A bucket record came back from the store in a shape that can't be
    interpreted as counters. Fatal for that bucket only.
    """
