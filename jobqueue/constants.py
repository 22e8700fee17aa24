"""
Application constants.
Centralized location for all constant values used across the job system.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> LEASED (lease acquired)
    - FAILED_RETRYABLE -> LEASED (backoff elapsed, lease acquired)
    - LEASED -> PENDING (lease expired - crash recovery)
    - LEASED -> COMPLETED (success)
    - LEASED -> FAILED_RETRYABLE (retryable failure, attempts remain)
    - LEASED -> DEAD (permanent failure or attempts exhausted)
    - DEAD -> PENDING (manual requeue from the dead-letter store)
    """

    PENDING = "pending"
    LEASED = "leased"
    COMPLETED = "completed"
    FAILED_RETRYABLE = "failed_retryable"
    DEAD = "dead"


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.LEASED}),
    JobStatus.FAILED_RETRYABLE: frozenset({JobStatus.LEASED}),
    JobStatus.LEASED: frozenset(
        {
            JobStatus.PENDING,
            JobStatus.COMPLETED,
            JobStatus.FAILED_RETRYABLE,
            JobStatus.DEAD,
        }
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.DEAD: frozenset({JobStatus.PENDING}),
}

# Statuses that block a new job with the same fingerprint
ACTIVE_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.PENDING,
    JobStatus.LEASED,
    JobStatus.FAILED_RETRYABLE,
)

# Statuses a worker may lease from
ELIGIBLE_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.PENDING,
    JobStatus.FAILED_RETRYABLE,
)


class OutcomeKind(StrEnum):
    """What a handler reports when it releases its lease."""

    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    PERMANENT_FAILURE = "permanent_failure"


class ErrorKind(StrEnum):
    """Classification recorded in a job's last_error and audit trail."""

    TRANSIENT_INFRA = "transient_infra"
    HANDLER_TIMEOUT = "handler_timeout"
    VALIDATION = "validation"
    HANDLER_ERROR = "handler_error"
    UNKNOWN_JOB_TYPE = "unknown_job_type"
    SHUTDOWN_INTERRUPTED = "shutdown_interrupted"
    LEASE_EXPIRED = "lease_expired"
    RESOURCE_EXHAUSTED = "resource_exhausted"


class MediaAssetState(StrEnum):
    """Processing state of a single uploaded media asset."""

    UPLOADED = "uploaded"
    QUEUED = "queued"
    PROCESSING = "processing"
    RENDITIONS_READY = "renditions_ready"
    FAILED = "failed"


# Well-known queues and job types
QUEUE_MEDIA = "media"
QUEUE_NOTIFICATIONS = "notifications"
JOB_TYPE_MEDIA_PROCESS = "media.process"
JOB_TYPE_NOTIFICATION_FANOUT = "notifications.fanout"

# Result sink tables
TABLE_MEDIA_ASSETS = "media_assets"
TABLE_NOTIFICATION_INBOX = "notification_inbox"

# Audit actors
ACTOR_PRODUCER = "producer"
ACTOR_REAPER = "reaper"
ACTOR_ADMIN = "admin"

# Default values
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LEASE_DURATION_SECONDS = 30
DEFAULT_JITTER_RATIO = 0.2

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOB_TRANSITIONS = "job_transitions_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_EXPIRED = "lease_expired_total"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"
METRIC_DEAD_LETTERED = "jobs_dead_lettered_total"
METRIC_API_REQUESTS = "api_requests_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_RELEASE_LEASE = "release_lease"
SPAN_SWEEP_LEASES = "sweep_leases"
