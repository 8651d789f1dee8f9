"""
Prometheus metrics for the payment relay.

Tracks:
- Webhook callbacks by provider and outcome
- Outbox publish successes and failures
- Outbox queue depth
- Retention sweep results (EventsDeleted, FailedEvents)

Sweep metrics live in their own registry because the sweeper is a
short-lived job that pushes them to a Pushgateway.
"""
import time

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, push_to_gateway

# Webhook metrics
webhook_callbacks_total = Counter(
    "webhook_callbacks_total",
    "Total payment provider callbacks received",
    ["provider", "outcome"],  # intake outcomes, unknown_provider, timeout, error
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished outbox events with retry budget left",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_publish_failures_total = Counter(
    "outbox_publish_failures_total",
    "Total outbox publish attempts that failed",
    ["event_type", "reason"],  # transient, schema, storage
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox relay pass duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

# Retention sweep metrics
sweep_registry = CollectorRegistry()

outbox_events_deleted_total = Counter(
    "outbox_events_deleted",
    "EventsDeleted: published outbox events removed by retention",
    ["service"],
    registry=sweep_registry,
)

outbox_failed_events = Gauge(
    "outbox_failed_events",
    "FailedEvents: unpublished outbox events that exhausted their retries",
    ["service"],
    registry=sweep_registry,
)

outbox_sweep_last_run_timestamp = Gauge(
    "outbox_sweep_last_run_timestamp",
    "Timestamp of last retention sweep",
    ["service"],
    registry=sweep_registry,
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_callback(provider: str, outcome: str, duration_seconds: float) -> None:
        """Record a processed webhook callback."""
        webhook_callbacks_total.labels(provider=provider, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_publish_failure(event_type: str, reason: str) -> None:
        """Record a failed publish attempt."""
        outbox_publish_failures_total.labels(event_type=event_type, reason=reason).inc()

    @staticmethod
    def record_relay_duration(duration_seconds: float) -> None:
        """Record relay pass duration."""
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def publish_sweep_metrics(
        deleted_count: int,
        failed_count: int,
        service: str,
        pushgateway_url: str | None = None,
        job: str = "outbox-cleanup",
    ) -> None:
        """
        Record sweep results and push them when a gateway is configured.

        Raises:
            Exception: Whatever the Pushgateway client raises; callers isolate it
        """
        outbox_events_deleted_total.labels(service=service).inc(deleted_count)
        outbox_failed_events.labels(service=service).set(failed_count)
        outbox_sweep_last_run_timestamp.labels(service=service).set(time.time())

        if pushgateway_url:
            push_to_gateway(pushgateway_url, job=job, registry=sweep_registry)


# Export singleton instance
metrics = MetricsCollector()
