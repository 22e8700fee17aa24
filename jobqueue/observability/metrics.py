"""
Prometheus metrics.

One collector per process, registered on the default registry unless a
registry is passed in (tests).
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

from jobqueue.constants import (
    METRIC_API_REQUESTS,
    METRIC_DEAD_LETTERED,
    METRIC_JOB_DURATION,
    METRIC_JOB_TRANSITIONS,
    METRIC_JOBS_ENQUEUED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
)

# Handler runtimes range from sub-second pushes to multi-minute transcodes
DURATION_BUCKETS = (0.05, 0.25, 1.0, 5.0, 15.0, 60.0, 180.0, 600.0, 1800.0)

_collector: "MetricsCollector | None" = None


class MetricsCollector:
    """Counters, gauges and histograms for queues, leases and handlers."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Jobs waiting in a queue (pending or backing off)",
            ["queue"],
            registry=self.registry,
        )
        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Enqueue calls, split by whether an active duplicate absorbed them",
            ["queue", "job_type", "deduplicated"],
            registry=self.registry,
        )
        self.job_transitions = Counter(
            METRIC_JOB_TRANSITIONS,
            "Job status transitions by target status",
            ["queue", "job_type", "to_status"],
            registry=self.registry,
        )
        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Handler wall time in seconds",
            ["queue", "job_type", "outcome"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.leases_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Leases granted to workers",
            ["queue"],
            registry=self.registry,
        )
        self.leases_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Expired leases reclaimed by the sweep",
            ["queue"],
            registry=self.registry,
        )
        self.dead_lettered = Counter(
            METRIC_DEAD_LETTERED,
            "Jobs moved to the dead-letter store",
            ["queue", "job_type"],
            registry=self.registry,
        )
        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Admin API requests by route template and status code",
            ["method", "endpoint", "status"],
            registry=self.registry,
        )

    def record_enqueued(self, queue: str, job_type: str, deduplicated: bool) -> None:
        flag = "true" if deduplicated else "false"
        self.jobs_enqueued.labels(queue=queue, job_type=job_type, deduplicated=flag).inc()

    def record_transition(self, queue: str, job_type: str, to_status: str) -> None:
        self.job_transitions.labels(queue=queue, job_type=job_type, to_status=to_status).inc()

    def record_job_executed(
        self, queue: str, job_type: str, outcome: str, duration_seconds: float
    ) -> None:
        self.job_duration.labels(queue=queue, job_type=job_type, outcome=outcome).observe(
            duration_seconds
        )

    def record_lease_acquired(self, queue: str, count: int = 1) -> None:
        self.leases_acquired.labels(queue=queue).inc(count)

    def record_lease_expired(self, queue: str, count: int = 1) -> None:
        self.leases_expired.labels(queue=queue).inc(count)

    def record_dead_lettered(self, queue: str, job_type: str) -> None:
        self.dead_lettered.labels(queue=queue, job_type=job_type).inc()

    def update_queue_depth(self, queue: str, depth: int) -> None:
        self.queue_depth.labels(queue=queue).set(depth)

    def record_api_request(self, method: str, endpoint: str, status: int) -> None:
        self.api_requests.labels(method=method, endpoint=endpoint, status=str(status)).inc()

    def render(self) -> bytes:
        """Exposition-format snapshot of the registry."""
        return generate_latest(self.registry)


def setup_metrics() -> MetricsCollector:
    """Create the process collector; later calls return the same one."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector


def get_metrics() -> MetricsCollector:
    return _collector or setup_metrics()
