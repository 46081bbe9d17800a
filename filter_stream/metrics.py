"""Prometheus metrics for the filter stream mock."""

from prometheus_client import Counter, Gauge, Histogram

TWEETS_EMITTED = Counter('filter_stream_tweets_emitted_total', 'Total synthetic tweets written to clients')
ACTIVE_STREAMS = Gauge('filter_stream_active_streams', 'Filter streams currently open')
REQUESTS_REJECTED = Counter(
    'filter_stream_requests_rejected_total',
    'Filter requests rejected before streaming',
    ['status']
)
STREAM_DURATION = Histogram(
    'filter_stream_duration_seconds',
    'Lifetime of filter stream connections',
    buckets=(1, 5, 15, 60, 300, 900, 3600)
)
