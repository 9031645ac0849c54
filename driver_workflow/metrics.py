"""
Prometheus metrics: committed/rejected transitions (API), commit failures (repository),
realtime feed outcomes and status normalization fallbacks.
"""
from prometheus_client import Counter, generate_latest

transitions_committed_total = Counter(
    "transitions_committed_total",
    "Total driver order status transitions committed",
    ["to_status"],
)
transitions_rejected_total = Counter(
    "transitions_rejected_total",
    "Total transitions rejected locally before reaching the repository",
    ["reason"],
)
commit_failures_total = Counter(
    "commit_failures_total",
    "Total status commits that failed in the repository",
    ["error_kind"],
)

# Realtime feed: accepted / ignored / rejected / invalid
realtime_events_total = Counter(
    "realtime_events_total",
    "Total realtime status pushes by reconciliation outcome",
    ["outcome"],
)
realtime_reconnects_total = Counter(
    "realtime_reconnects_total",
    "Total times the realtime feed lost its Redis connection and resubscribed",
)
status_normalization_fallbacks_total = Counter(
    "status_normalization_fallbacks_total",
    "Unknown statuses on assigned orders that were assumed to be picked_up",
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
