"""
Event type definitions for the observability hook.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from jobqueue.constants import JobStatus


class TransitionEvent(BaseModel):
    """
    Event emitted for every job status transition.
    Consumed by logging, metrics and external collaborators such as cache
    invalidation, which listens for transitions to completed.
    """

    job_id: UUID
    queue: str
    job_type: str
    from_status: JobStatus | None
    to_status: JobStatus
    attempts: int
    actor: str
    timestamp: datetime
    error: dict[str, Any] | None = None
    result: dict[str, Any] | None = None

    @property
    def is_completion(self) -> bool:
        return self.to_status == JobStatus.COMPLETED

    @property
    def is_dead_letter(self) -> bool:
        return self.to_status == JobStatus.DEAD

    def log_fields(self) -> dict[str, Any]:
        """Flat fields for structured log records."""
        fields: dict[str, Any] = {
            "job_id": str(self.job_id),
            "queue": self.queue,
            "job_type": self.job_type,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "attempts": self.attempts,
            "actor": self.actor,
        }
        if self.error is not None:
            fields["error_kind"] = self.error.get("kind")
            fields["error"] = self.error.get("message")
        return fields
