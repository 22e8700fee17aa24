"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel

from jobqueue.clock import utcnow
from jobqueue.constants import ErrorKind, OutcomeKind

if TYPE_CHECKING:
    from jobqueue.db.models import Job
    from jobqueue.sink import ResultSink


class JobError(BaseModel):
    """
    Structured failure summary.
    Stored as a job's last_error and on failure audit entries.
    """

    kind: ErrorKind
    message: str
    details: dict[str, Any] | None = None

    def to_record(self, attempt: int, at: datetime | None = None) -> dict[str, Any]:
        record: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "attempt": attempt,
            "at": (at or utcnow()).isoformat(),
        }
        if self.details:
            record["details"] = self.details
        return record


class JobOutcome(BaseModel):
    """
    Result of job execution.
    Returned by job handlers and passed to the lease manager on release.
    """

    kind: OutcomeKind
    result: dict[str, Any] | None = None
    error: JobError | None = None

    @property
    def success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @classmethod
    def succeeded(cls, result: dict[str, Any] | None = None) -> "JobOutcome":
        return cls(kind=OutcomeKind.SUCCESS, result=result)

    @classmethod
    def retryable(
        cls,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> "JobOutcome":
        return cls(
            kind=OutcomeKind.RETRYABLE_FAILURE,
            error=JobError(kind=kind, message=message, details=details),
        )

    @classmethod
    def permanent(
        cls,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> "JobOutcome":
        return cls(
            kind=OutcomeKind.PERMANENT_FAILURE,
            error=JobError(kind=kind, message=message, details=details),
        )


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.

    Carries the job's metadata, the validated payload and the dependencies
    built for this job only (the result sink and per-job resources such as
    HTTP clients). Nothing in it outlives the job.
    """

    job_id: UUID
    queue: str
    job_type: str
    attempt: int
    max_attempts: int
    payload: Any
    lease_owner: str
    lease_expires_at: datetime
    sink: "ResultSink"
    resources: Mapping[str, Any] = field(default_factory=dict)
    renew_lease: Callable[[float | None], Awaitable[datetime]] | None = None

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)

    def resource(self, name: str) -> Any:
        """Get a per-job dependency by name."""
        try:
            return self.resources[name]
        except KeyError:
            raise LookupError(f"Resource {name!r} is not available to {self.job_type}") from None

    async def renew(self, duration_seconds: float | None = None) -> datetime:
        """Extend this job's lease. Long-running handlers call it between steps."""
        if self.renew_lease is None:
            raise RuntimeError("Lease renewal is not available in this context")
        self.lease_expires_at = await self.renew_lease(duration_seconds)
        return self.lease_expires_at


@dataclass
class LeaseInfo:
    """
    One lease grant held by a worker slot.

    The attempt number identifies the grant: after the sweep reclaims a job
    and it is leased again, even by the same owner, renewals and releases
    carrying the old attempt are rejected.
    """

    job_id: UUID
    queue: str
    owner: str
    attempt: int
    expires_at: datetime

    @classmethod
    def from_job(cls, job: "Job") -> "LeaseInfo":
        return cls(
            job_id=job.id,
            queue=job.queue,
            owner=job.lease_owner,
            attempt=job.attempts,
            expires_at=job.lease_expires_at,
        )
