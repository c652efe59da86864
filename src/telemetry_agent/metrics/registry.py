"""
Prometheus collectors for the delivery pipeline.

Every collector is labelled by ``agent`` so several agents in one process
report separately.
"""

from prometheus_client import Counter, Gauge, Histogram

EVENTS_ENQUEUED_TOTAL = Counter(
    "telemetry_events_enqueued_total",
    "Events accepted after duplicate suppression",
    ["agent", "priority"],
)

EVENTS_DUPLICATE_TOTAL = Counter(
    "telemetry_events_duplicate_total",
    "Events dropped by the duplicate filter",
    ["agent"],
)

DISPATCH_ATTEMPTS_TOTAL = Counter(
    "telemetry_dispatch_attempts_total",
    "Individual HTTP attempts made by the dispatcher",
    ["agent", "outcome"],
)

EVENTS_DELIVERED_TOTAL = Counter(
    "telemetry_events_delivered_total",
    "Events confirmed delivered (2xx)",
    ["agent"],
)

EVENTS_STORED_OFFLINE_TOTAL = Counter(
    "telemetry_events_stored_offline_total",
    "Events moved into the offline store",
    ["agent"],
)

OFFLINE_EVICTED_TOTAL = Counter(
    "telemetry_offline_evicted_total",
    "Oldest offline events evicted by the size bound",
    ["agent"],
)

READY_QUEUE_DEPTH = Gauge(
    "telemetry_ready_queue_depth",
    "Records currently waiting in the ready queue",
    ["agent"],
)

OFFLINE_QUEUE_DEPTH = Gauge(
    "telemetry_offline_queue_depth",
    "Records currently held by the offline store",
    ["agent"],
)

DISPATCH_LATENCY_MS = Histogram(
    "telemetry_dispatch_latency_ms",
    "Latency of a full dispatch (including retries) in milliseconds",
    ["agent"],
    buckets=[5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000],
)


class MetricsRegistry:
    """Groups the delivery collectors for components that record metrics."""

    events_enqueued_total = EVENTS_ENQUEUED_TOTAL
    events_duplicate_total = EVENTS_DUPLICATE_TOTAL
    dispatch_attempts_total = DISPATCH_ATTEMPTS_TOTAL
    events_delivered_total = EVENTS_DELIVERED_TOTAL
    events_stored_offline_total = EVENTS_STORED_OFFLINE_TOTAL
    offline_evicted_total = OFFLINE_EVICTED_TOTAL
    ready_queue_depth = READY_QUEUE_DEPTH
    offline_queue_depth = OFFLINE_QUEUE_DEPTH
    dispatch_latency_ms = DISPATCH_LATENCY_MS


# Singleton instance
metrics_registry = MetricsRegistry()
