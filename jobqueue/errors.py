"""Exception types for the job system."""

from uuid import UUID

from jobqueue.constants import ErrorKind, JobStatus


class JobQueueError(Exception):
    """Base exception for all job system errors."""

    pass


class TransientInfraError(JobQueueError):
    """A network or store dependency is temporarily unavailable. Retryable."""

    kind = ErrorKind.TRANSIENT_INFRA


class HandlerTimeoutError(JobQueueError):
    """A handler exceeded its execution bound. Retryable."""

    kind = ErrorKind.HANDLER_TIMEOUT

    def __init__(self, job_type: str, timeout_seconds: float):
        self.job_type = job_type
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Handler for {job_type} exceeded {timeout_seconds}s")


class PayloadValidationError(JobQueueError):
    """A payload is malformed. Permanent, the job goes straight to dead."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, errors: list | None = None):
        self.errors = errors or []
        super().__init__(message)


class UnknownJobTypeError(JobQueueError):
    """No handler is registered for a job type. Permanent."""

    kind = ErrorKind.UNKNOWN_JOB_TYPE

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type: {job_type}")


class ResourceExhaustedError(JobQueueError):
    """A queue's backlog is full. Producers should retry the enqueue later."""

    kind = ErrorKind.RESOURCE_EXHAUSTED

    def __init__(self, queue: str, depth: int, limit: int):
        self.queue = queue
        self.depth = depth
        self.limit = limit
        super().__init__(f"Queue {queue} is saturated ({depth}/{limit} pending)")


class LeaseConflictError(JobQueueError):
    """The caller does not hold the lease it tried to use."""

    def __init__(self, job_id: UUID, worker_id: str | None = None, message: str | None = None):
        self.job_id = job_id
        self.worker_id = worker_id
        if message is None:
            message = f"Worker {worker_id} does not hold a valid lease on job {job_id}"
        super().__init__(message)


class TransitionConflictError(LeaseConflictError):
    """A conditional transition lost an optimistic-concurrency race."""

    def __init__(self, job_id: UUID, expected: JobStatus, target: JobStatus):
        self.expected = expected
        self.target = target
        super().__init__(
            job_id,
            message=f"Job {job_id} is no longer {expected}; cannot move to {target}",
        )


class InvalidTransitionError(JobQueueError):
    """The state machine does not allow this transition."""

    def __init__(self, source: JobStatus, target: JobStatus):
        self.source = source
        self.target = target
        super().__init__(f"Transition {source} -> {target} is not allowed")


class JobNotFoundError(JobQueueError):
    """Raised when a job is not found."""

    def __init__(self, job_id: UUID, message: str | None = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class DuplicateFingerprintError(JobQueueError):
    """An equivalent non-terminal job already exists."""

    def __init__(self, fingerprint: str, existing_id: UUID):
        self.fingerprint = fingerprint
        self.existing_id = existing_id
        super().__init__(f"Fingerprint {fingerprint} is held by active job {existing_id}")


class StoreUnavailableError(JobQueueError):
    """The job store cannot be reached or its schema is missing."""

    pass
