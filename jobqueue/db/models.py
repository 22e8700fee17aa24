"""
SQLAlchemy database models.
Defines the job, audit, dead-letter and result tables.
"""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobqueue.clock import utcnow
from jobqueue.constants import ACTIVE_STATUSES, JobStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_SQL = ", ".join(f"'{status.value}'" for status in ACTIVE_STATUSES)
_ACTIVE_FINGERPRINT_WHERE = text(f"dedupe AND status IN ({_ACTIVE_SQL})")


JobStatusType = Enum(
    JobStatus,
    name="job_status",
    create_constraint=True,
    values_callable=lambda x: [e.value for e in x],
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are conditional updates on this table.

    Key constraints:
    - fingerprint is unique among non-terminal jobs that opted in to dedupe
    - lease_owner and lease_expires_at are set only while status is leased
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    queue: Mapped[str] = mapped_column(String(64), nullable=False)
    job_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    # Deduplication
    fingerprint: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    dedupe: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    status: Mapped[JobStatus] = mapped_column(
        JobStatusType,
        nullable=False,
        default=JobStatus.PENDING,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    available_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Outcome
    last_error: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # Lease polling: FIFO within a queue among eligible jobs
        Index("ix_jobs_queue_poll", "queue", "status", "available_at", "created_at"),
        # Sweep of expired leases
        Index("ix_jobs_lease_expiry", "status", "lease_expires_at"),
        Index(
            "uq_jobs_active_fingerprint",
            "fingerprint",
            unique=True,
            postgresql_where=_ACTIVE_FINGERPRINT_WHERE,
            sqlite_where=_ACTIVE_FINGERPRINT_WHERE,
        ),
    )

    @property
    def is_retryable(self) -> bool:
        """Check if another attempt is allowed."""
        return self.attempts < self.max_attempts

    @property
    def is_lease_expired(self) -> bool:
        """Check if the job's lease has expired."""
        if self.lease_expires_at is None:
            return True
        return utcnow() > self.lease_expires_at

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue}, type={self.job_type}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class JobAuditEntry(Base):
    """One row per status transition, retained with the job."""

    __tablename__ = "job_audit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    from_status: Mapped[JobStatus | None] = mapped_column(JobStatusType, nullable=True)
    to_status: Mapped[JobStatus] = mapped_column(JobStatusType, nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "actor": self.actor,
            "attempts": self.attempts,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
        }


class DeadLetter(Base):
    """
    Snapshot of a job at the moment it became dead.

    Append-mostly: a job that is requeued and dies again gets a new row.
    """

    __tablename__ = "dead_letters"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    queue: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    job_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    fingerprint: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    last_error: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    audit_trail: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    dead_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    requeued_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    requeued_by: Mapped[str | None] = mapped_column(String(255), nullable=True)


class JobResultRow(Base):
    """Rows written by handlers through the SQL result sink."""

    __tablename__ = "job_results"

    table_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    fields: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
