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
    start_http_server,
)

from taskqueue.constants import (
    METRIC_QUEUE_DEPTH,
    METRIC_STALE_RECLAIMED,
    METRIC_TASK_DURATION,
    METRIC_TASKS_CLAIMED,
    METRIC_TASKS_COMPLETED,
    METRIC_TASKS_ENQUEUED,
    METRIC_TASKS_FAILED,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the task queue.

    Collects metrics for:
    - Queue depth
    - Task enqueues, claims, completions and failures
    - Task execution duration
    - Stale lock reclaims
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        # Queue depth gauge (by payload type)
        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending tasks",
            ["payload_type"],
            registry=self._registry,
        )

        self.tasks_enqueued = Counter(
            METRIC_TASKS_ENQUEUED,
            "Total number of tasks enqueued",
            ["payload_type"],
            registry=self._registry,
        )

        self.tasks_claimed = Counter(
            METRIC_TASKS_CLAIMED,
            "Total number of tasks claimed",
            ["only_type"],
            registry=self._registry,
        )

        self.tasks_completed = Counter(
            METRIC_TASKS_COMPLETED,
            "Total number of tasks completed successfully",
            ["payload_type"],
            registry=self._registry,
        )

        # status is the state the task moved to: pending (retry) or failed
        self.tasks_failed = Counter(
            METRIC_TASKS_FAILED,
            "Total number of task executions that failed",
            ["payload_type", "status"],
            registry=self._registry,
        )

        self.stale_reclaimed = Counter(
            METRIC_STALE_RECLAIMED,
            "Total number of stale task locks reclaimed",
            ["payload_type"],
            registry=self._registry,
        )

        self.task_duration = Histogram(
            METRIC_TASK_DURATION,
            "Task handler duration in seconds",
            ["payload_type", "outcome"],
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

    def record_task_enqueued(self, payload_type: str) -> None:
        """Record a task enqueue."""
        self.tasks_enqueued.labels(payload_type=payload_type).inc()

    def record_tasks_claimed(self, count: int, only_type: str | None = None) -> None:
        """Record claimed tasks."""
        self.tasks_claimed.labels(only_type=only_type or "any").inc(count)

    def record_task_completed(self, payload_type: str, duration_seconds: float) -> None:
        """Record a successful task execution."""
        self.tasks_completed.labels(payload_type=payload_type).inc()
        self.task_duration.labels(payload_type=payload_type, outcome="completed").observe(
            duration_seconds
        )

    def record_task_failed(self, payload_type: str, status: str, duration_seconds: float) -> None:
        """Record a failed task execution."""
        self.tasks_failed.labels(payload_type=payload_type, status=status).inc()
        self.task_duration.labels(payload_type=payload_type, outcome="failed").observe(
            duration_seconds
        )

    def record_stale_reclaimed(self, payload_type: str, count: int = 1) -> None:
        """Record reclaimed stale locks."""
        self.stale_reclaimed.labels(payload_type=payload_type).inc(count)

    def update_queue_depth(self, payload_type: str, depth: int) -> None:
        """Update queue depth for a payload type."""
        self.queue_depth.labels(payload_type=payload_type).set(depth)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics(port: int = 0) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Args:
        port: Serve metrics over HTTP on this port when non-zero.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    if port:
        start_http_server(port, registry=_metrics._registry)
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
