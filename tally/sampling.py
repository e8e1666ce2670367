import random


class PreallocationSampler(object):
    """
    Decides, one event at a time, whether to create the next period's buckets
    ahead of time. Each draw is an independent biased coin flip with
    probability ``1 / expected_daily_volume``, so on a page that gets about
    the expected number of hits a day, roughly one hit per day triggers the
    pre-allocation.

    Pre-allocation is a best-effort optimization: a draw that never comes up
    just means the bucket is created by its first real increment instead.
    Too high a probability wastes allocation writes; too low lets some
    buckets grow in place on their first write of the period.
    """

    def __init__(self, default_probability=1.0 / 100000, rng=None):
        """
        :param default_probability:
            Probability used when no usable volume estimate is given.
        :type default_probability:
            float in (0, 1]
        :param rng:
            Source of randomness, defaults to a fresh ``random.Random``.
        :type rng:
            object with a ``random()`` method
        """
        if not 0 < default_probability <= 1:
            raise ValueError('default probability must be in (0, 1], got %r' %
                             default_probability)
        self.default_probability = default_probability
        self.rng = rng or random.Random()

    def probability(self, expected_daily_volume):
        if not expected_daily_volume or expected_daily_volume <= 0:
            return self.default_probability
        return min(1.0, 1.0 / expected_daily_volume)

    def should_preallocate(self, expected_daily_volume=None):
        return self.rng.random() < self.probability(expected_daily_volume)
