"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from jobpipe.constants import (
    METRIC_BROKER_CONNECTED,
    METRIC_BROKER_RECONNECTS,
    METRIC_HANDLER_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_MAIL_SENT,
    METRIC_MESSAGES_CONSUMED,
    METRIC_MESSAGES_DEAD_LETTERED,
    METRIC_MESSAGES_RETRIED,
    METRIC_NOTIFICATIONS_CREATED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the job pipeline.

    Collects metrics for:
    - Jobs enqueued by the producer
    - Messages consumed, retried and dead-lettered per queue
    - Handler duration
    - Mail sends and notification records
    - Broker connection health
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs published by the producer",
            ["queue", "job_type"],
            registry=self._registry,
        )

        # outcome: ack, retry, dead_letter, discarded, soft_failure
        self.messages_consumed = Counter(
            METRIC_MESSAGES_CONSUMED,
            "Total number of messages consumed",
            ["queue", "outcome"],
            registry=self._registry,
        )

        self.messages_retried = Counter(
            METRIC_MESSAGES_RETRIED,
            "Total number of messages republished for retry",
            ["queue", "error_type"],
            registry=self._registry,
        )

        self.messages_dead_lettered = Counter(
            METRIC_MESSAGES_DEAD_LETTERED,
            "Total number of messages removed after permanent failure or exhausted retries",
            ["queue", "reason"],
            registry=self._registry,
        )

        self.handler_duration = Histogram(
            METRIC_HANDLER_DURATION,
            "Job handler duration in seconds",
            ["queue", "job_type"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        self.mail_sent = Counter(
            METRIC_MAIL_SENT,
            "Total number of mail provider calls",
            ["status", "error_type"],
            registry=self._registry,
        )

        self.notifications_created = Counter(
            METRIC_NOTIFICATIONS_CREATED,
            "Total number of notification records created",
            ["kind", "published"],
            registry=self._registry,
        )

        self.broker_reconnects = Counter(
            METRIC_BROKER_RECONNECTS,
            "Total number of scheduled broker reconnect attempts",
            registry=self._registry,
        )

        self.broker_connected = Gauge(
            METRIC_BROKER_CONNECTED,
            "1 when the broker connection is open",
            registry=self._registry,
        )

    def record_job_enqueued(self, queue: str, job_type: str) -> None:
        """Record a job published by the producer."""
        self.jobs_enqueued.labels(queue=queue, job_type=job_type).inc()

    def record_message_outcome(self, queue: str, outcome: str) -> None:
        """Record how a delivery was resolved."""
        self.messages_consumed.labels(queue=queue, outcome=outcome).inc()

    def record_retry(self, queue: str, error_type: str) -> None:
        """Record a republish-for-retry."""
        self.messages_retried.labels(queue=queue, error_type=error_type).inc()

    def record_dead_letter(self, queue: str, reason: str) -> None:
        """Record a message leaving the main queue for good."""
        self.messages_dead_lettered.labels(queue=queue, reason=reason).inc()

    def observe_handler(self, queue: str, job_type: str, duration_seconds: float) -> None:
        """Record handler duration."""
        self.handler_duration.labels(queue=queue, job_type=job_type).observe(duration_seconds)

    def record_mail(self, status: str, error_type: str = "none") -> None:
        """Record a mail provider call."""
        self.mail_sent.labels(status=status, error_type=error_type).inc()

    def record_notification(self, kind: str, published: bool) -> None:
        """Record a notification record and whether its real-time publish succeeded."""
        self.notifications_created.labels(kind=kind, published=str(published).lower()).inc()

    def record_reconnect_attempt(self) -> None:
        """Record a scheduled broker reconnect."""
        self.broker_reconnects.inc()

    def set_broker_connected(self, connected: bool) -> None:
        """Update the broker connection gauge."""
        self.broker_connected.set(1 if connected else 0)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """Get the metrics collector instance, creating it on first use."""
    if _metrics is None:
        return setup_metrics()
    return _metrics
