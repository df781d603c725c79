"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from taskqueue.constants import (
    METRIC_DEAD_LETTERED,
    METRIC_DEDUP_HITS,
    METRIC_JOB_DURATION,
    METRIC_JOB_RETRIES,
    METRIC_JOBS_COMPLETED,
    METRIC_JOBS_ENQUEUED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_EXPIRED,
    METRIC_READY_QUEUE_DEPTH,
    METRIC_SCHEDULED_JOBS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the task-queue engine.

    Collects metrics for:
    - Ready queue depth and scheduled jobs
    - Job enqueues, completions, retries and dead letters
    - Job execution duration
    - Lease operations
    - Dedup hits
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.ready_queue_depth = Gauge(
            METRIC_READY_QUEUE_DEPTH,
            "Number of due job ids waiting for a worker",
            registry=self._registry,
        )

        self.scheduled_jobs = Gauge(
            METRIC_SCHEDULED_JOBS,
            "Number of jobs tracked by the scheduler",
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type", "kind"],
            registry=self._registry,
        )

        self.jobs_completed = Counter(
            METRIC_JOBS_COMPLETED,
            "Total number of job attempts finished, by resulting state",
            ["job_type", "state"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_type", "state"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.job_retries = Counter(
            METRIC_JOB_RETRIES,
            "Total number of retries scheduled",
            ["job_type"],
            registry=self._registry,
        )

        self.dead_lettered = Counter(
            METRIC_DEAD_LETTERED,
            "Total number of dead-lettered jobs",
            ["job_type"],
            registry=self._registry,
        )

        self.dedup_hits = Counter(
            METRIC_DEDUP_HITS,
            "Total number of enqueues rejected or coalesced by dedup key",
            ["policy"],
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases",
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

    def record_job_enqueued(self, job_type: str, kind: str) -> None:
        """Record a job enqueue."""
        self.jobs_enqueued.labels(job_type=job_type, kind=kind).inc()

    def record_job_completed(
        self,
        job_type: str,
        state: str,
        duration_seconds: float,
    ) -> None:
        """Record a finished attempt."""
        self.jobs_completed.labels(job_type=job_type, state=state).inc()
        self.job_duration.labels(job_type=job_type, state=state).observe(duration_seconds)

    def record_retry(self, job_type: str) -> None:
        self.job_retries.labels(job_type=job_type).inc()

    def record_dead_lettered(self, job_type: str) -> None:
        self.dead_lettered.labels(job_type=job_type).inc()

    def record_dedup_hit(self, policy: str) -> None:
        self.dedup_hits.labels(policy=policy).inc()

    def record_lease_expired(self, count: int = 1) -> None:
        """Record expired leases."""
        self.lease_expired.inc(count)

    def record_lease_acquired(self, worker_id: str, count: int = 1) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(worker_id=worker_id).inc(count)

    def update_queue_gauges(self, ready: int, scheduled: int) -> None:
        """Update ready queue depth and scheduled job count."""
        self.ready_queue_depth.set(ready)
        self.scheduled_jobs.set(scheduled)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)


def setup_metrics(registry: CollectorRegistry | None = None) -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector(registry)
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
