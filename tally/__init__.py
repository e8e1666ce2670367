"""
Tally: pre-aggregated, real-time hit counters.

Hits on (site, page) are counted straight into daily and monthly bucket
records, which range queries then read back as time series.
"""

__version__ = '0.1'

# Set by ``tally.server.main`` to the aggregator it is serving.
server_backend = None
