"""Prometheus counters for the orchestration core."""

from prometheus_client import Counter

PROXY_SYNCS_TOTAL = Counter(
    "damp_proxy_syncs_total",
    "Reverse proxy configuration syncs",
    labelnames=["outcome"],  # outcome: applied, skipped, failed
)

ENGINE_EVENT_RECONNECTS_TOTAL = Counter(
    "damp_engine_event_reconnects_total",
    "Engine event stream reconnect attempts",
)

ENGINE_EVENTS_TOTAL = Counter(
    "damp_engine_events_total",
    "Engine container events received",
    labelnames=["action"],
)

INVALIDATIONS_TOTAL = Counter(
    "damp_invalidations_total",
    "Invalidation signals published",
    labelnames=["scope"],
)

PORT_REASSIGNMENTS_TOTAL = Counter(
    "damp_port_reassignments_total",
    "Desired host ports that were occupied and reassigned",
)

LIFECYCLE_OPERATIONS_TOTAL = Counter(
    "damp_lifecycle_operations_total",
    "Entity lifecycle operations",
    labelnames=["operation", "outcome"],  # outcome: success, failure
)
