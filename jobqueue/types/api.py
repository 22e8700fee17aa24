"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from jobqueue.constants import JobStatus


class EnqueueRequest(BaseModel):
    """Request body for enqueuing a job."""

    queue: str = Field(..., min_length=1, max_length=64)
    job_type: str = Field(..., min_length=1, max_length=128)
    payload: dict[str, Any] = Field(..., description="Job payload data")
    fingerprint: str | None = Field(default=None, max_length=128)
    max_attempts: int | None = Field(default=None, ge=1, le=50)
    not_before: datetime | None = Field(
        default=None, description="Earliest time the job may run (UTC)"
    )
    dedupe: bool = Field(default=True, description="Return an active duplicate instead of inserting")


class EnqueueResponse(BaseModel):
    """Response body after enqueuing a job."""

    id: UUID
    status: JobStatus
    created: bool
    message: str = "Job enqueued"


class JobResponse(BaseModel):
    """Full job details response."""

    id: UUID
    queue: str
    job_type: str
    payload: dict[str, Any]
    fingerprint: str | None
    status: JobStatus
    attempts: int
    max_attempts: int
    available_at: datetime
    lease_owner: str | None
    lease_expires_at: datetime | None
    last_error: dict[str, Any] | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class AuditEntryResponse(BaseModel):
    from_status: JobStatus | None
    to_status: JobStatus
    actor: str
    attempts: int
    error: dict[str, Any] | None
    created_at: datetime


class DeadLetterResponse(BaseModel):
    """Dead-lettered job with its failure history."""

    id: UUID
    job_id: UUID
    queue: str
    job_type: str
    payload: dict[str, Any]
    fingerprint: str | None
    attempts: int
    max_attempts: int
    reason: str
    last_error: dict[str, Any] | None
    audit_trail: list[dict[str, Any]]
    dead_at: datetime
    requeued_at: datetime | None
    requeued_by: str | None


class DeadLetterListResponse(BaseModel):
    """Paginated list of dead letters."""

    items: list[DeadLetterResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class RequeueRequest(BaseModel):
    """Request body for requeuing a dead job."""

    actor: str = Field(default="admin", min_length=1, max_length=255)


class RequeueResponse(BaseModel):
    id: UUID
    status: JobStatus
    attempts: int
    message: str = "Job requeued"


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    queues: dict[str, int] = Field(default_factory=dict)
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
