"""
Job store for database operations.
Implements the core data access patterns for job management.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import utcnow
from jobqueue.constants import (
    ACTIVE_STATUSES,
    ACTOR_PRODUCER,
    ALLOWED_TRANSITIONS,
    ELIGIBLE_STATUSES,
    JobStatus,
)
from jobqueue.db.models import Job, JobAuditEntry
from jobqueue.errors import (
    DuplicateFingerprintError,
    InvalidTransitionError,
    JobNotFoundError,
    TransitionConflictError,
)
from jobqueue.types.events import TransitionEvent

if TYPE_CHECKING:
    from jobqueue.observability.events import EventBus

logger = logging.getLogger(__name__)


class JobStore:
    """
    Session-scoped store for job records.

    Implements atomic operations for:
    - Insertion with fingerprint deduplication
    - Conditional status transitions (optimistic concurrency)
    - Eligible-job selection for leasing
    - Expired-lease discovery for the sweep

    Every transition appends an audit entry and queues a TransitionEvent in
    ``events``; the caller publishes them once the transaction commits.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the store with a database session.

        Args:
            session: The async database session.
        """
        self._session = session
        self.events: list[TransitionEvent] = []

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def dialect(self) -> str:
        return self._session.get_bind().dialect.name

    async def insert(
        self,
        queue: str,
        job_type: str,
        payload: dict[str, Any],
        *,
        max_attempts: int,
        fingerprint: str | None = None,
        dedupe: bool = True,
        available_at: datetime | None = None,
        actor: str = ACTOR_PRODUCER,
    ) -> tuple[Job, bool]:
        """
        Insert a pending job, or return the active job holding its fingerprint.

        Args:
            queue: Logical channel name.
            job_type: Handler discriminator.
            payload: Opaque JSON payload.
            max_attempts: Attempt ceiling.
            fingerprint: Optional deduplication hash.
            dedupe: When False, the fingerprint is recorded but not enforced.
            available_at: Earliest lease time (defaults to now).
            actor: Recorded on the audit entry.

        Returns:
            Tuple of (Job, created) where created is False for a duplicate.
        """
        deduplicating = fingerprint is not None and dedupe
        if deduplicating:
            existing = await self.find_active_by_fingerprint(fingerprint)
            if existing is not None:
                logger.info(
                    "Returned existing job (duplicate fingerprint)",
                    extra={"job_id": str(existing.id), "fingerprint": fingerprint},
                )
                return existing, False

        now = utcnow()
        job = Job(
            queue=queue,
            job_type=job_type,
            payload=payload,
            fingerprint=fingerprint,
            dedupe=dedupe,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            available_at=max(available_at, now) if available_at else now,
            created_at=now,
            updated_at=now,
        )

        try:
            async with self._session.begin_nested():
                self._session.add(job)
                await self._session.flush()
        except IntegrityError:
            # Lost a race against a concurrent insert of the same fingerprint
            if not deduplicating:
                raise
            existing = await self.find_active_by_fingerprint(fingerprint)
            if existing is None:
                raise
            return existing, False

        self._record(job, None, JobStatus.PENDING, actor)
        logger.info(
            "Inserted job",
            extra={"job_id": str(job.id), "queue": queue, "job_type": job_type},
        )
        return job, True

    async def insert_unique(self, queue: str, job_type: str, payload: dict[str, Any], **kwargs: Any) -> Job:
        """
        Insert a job, failing on an active duplicate.

        Raises:
            DuplicateFingerprintError: If an equivalent job is still active.
        """
        job, created = await self.insert(queue, job_type, payload, **kwargs)
        if not created:
            raise DuplicateFingerprintError(job.fingerprint or "", job.id)
        return job

    async def find(self, job_id: UUID) -> Job | None:
        """Get a job by ID, or None."""
        result = await self._session.execute(select(Job).where(Job.id == job_id))
        return result.scalar_one_or_none()

    async def get(self, job_id: UUID) -> Job:
        """
        Get a job by ID.

        Raises:
            JobNotFoundError: If the job does not exist.
        """
        job = await self.find(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def find_active_by_fingerprint(self, fingerprint: str) -> Job | None:
        """Get the non-terminal deduplicating job holding a fingerprint."""
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.fingerprint == fingerprint,
                    Job.dedupe.is_(True),
                    Job.status.in_(ACTIVE_STATUSES),
                )
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        job_id: UUID,
        expected_status: JobStatus,
        new_status: JobStatus,
        *,
        actor: str,
        fields: dict[str, Any] | None = None,
        error: dict[str, Any] | None = None,
        guards: Sequence[Any] = (),
    ) -> Job:
        """
        Move a job between statuses if it is still in the expected one.

        The UPDATE is conditional on the current status (and any extra guard
        clauses), so of two callers racing on the same job only one succeeds.

        Args:
            job_id: The job UUID.
            expected_status: Status the caller believes the job is in.
            new_status: Target status.
            actor: Recorded on the audit entry.
            fields: Extra column values to set.
            error: Structured error recorded on the audit entry.
            guards: Additional WHERE clauses, e.g. lease ownership.

        Returns:
            The updated Job.

        Raises:
            InvalidTransitionError: If the state machine forbids the move.
            JobNotFoundError: If the job does not exist.
            TransitionConflictError: If the job is no longer in expected_status.
        """
        if new_status not in ALLOWED_TRANSITIONS[expected_status]:
            raise InvalidTransitionError(expected_status, new_status)

        values: dict[str, Any] = {"updated_at": utcnow(), **(fields or {})}
        values["status"] = new_status

        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.status == expected_status,
                    *guards,
                )
            )
            .values(**values)
            .returning(Job)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()

        if job is None:
            if await self.find(job_id) is None:
                raise JobNotFoundError(job_id)
            raise TransitionConflictError(job_id, expected_status, new_status)

        await self._session.refresh(job)
        self._record(job, expected_status, new_status, actor, error)
        return job

    async def touch_lease(
        self,
        job_id: UUID,
        worker_id: str,
        expires_at: datetime,
        now: datetime,
        attempt: int | None = None,
    ) -> bool:
        """
        Extend an unexpired lease held by worker_id. Not a status transition.

        With attempt given, only that grant of the lease is extended.

        Returns:
            True if the lease was extended.
        """
        conditions = [
            Job.id == job_id,
            Job.status == JobStatus.LEASED,
            Job.lease_owner == worker_id,
            Job.lease_expires_at >= now,
        ]
        if attempt is not None:
            conditions.append(Job.attempts == attempt)

        stmt = (
            update(Job)
            .where(and_(*conditions))
            .values(lease_expires_at=expires_at, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def next_eligible(self, queue: str, now: datetime) -> Job | None:
        """
        Oldest job in a queue that may be leased now.

        FIFO by created_at, ties broken by id. On PostgreSQL the row is
        locked with SKIP LOCKED so concurrent acquirers pick different jobs.
        """
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.queue == queue,
                    Job.status.in_(ELIGIBLE_STATUSES),
                    Job.available_at <= now,
                )
            )
            .order_by(Job.created_at.asc(), Job.id.asc())
            .limit(1)
        )
        if self.dialect == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def expired_leases(self, now: datetime, limit: int = 100) -> Sequence[Job]:
        """Leased jobs whose lease ran out before now."""
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.status == JobStatus.LEASED,
                    Job.lease_expires_at < now,
                )
            )
            .order_by(Job.lease_expires_at.asc())
            .limit(limit)
        )
        if self.dialect == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def audit_trail(self, job_id: UUID) -> Sequence[JobAuditEntry]:
        """All transitions of a job in the order they happened."""
        stmt = (
            select(JobAuditEntry)
            .where(JobAuditEntry.job_id == job_id)
            .order_by(JobAuditEntry.id.asc())
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_jobs(
        self,
        queue: str | None = None,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional filtering.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if queue is not None:
            filters.append(Job.queue == queue)
        if status is not None:
            filters.append(Job.status == status)

        count_stmt = select(func.count()).select_from(Job).where(and_(True, *filters))
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(Job)
            .where(and_(True, *filters))
            .order_by(Job.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        jobs = (await self._session.execute(stmt)).scalars().all()
        return jobs, total

    async def queue_depth(self, queue: str) -> int:
        """Number of jobs waiting in a queue (pending or backing off)."""
        stmt = (
            select(func.count())
            .select_from(Job)
            .where(and_(Job.queue == queue, Job.status.in_(ELIGIBLE_STATUSES)))
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def stats(self, queue: str | None = None) -> dict[str, int]:
        """
        Get job counts by status.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if queue is not None:
            stmt = stmt.where(Job.queue == queue)
        result = await self._session.execute(stmt)
        return {status.value: count for status, count in result.all()}

    def _record(
        self,
        job: Job,
        from_status: JobStatus | None,
        to_status: JobStatus,
        actor: str,
        error: dict[str, Any] | None = None,
    ) -> None:
        now = job.updated_at or utcnow()
        self._session.add(
            JobAuditEntry(
                job_id=job.id,
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                attempts=job.attempts,
                error=error,
                created_at=now,
            )
        )
        self.events.append(
            TransitionEvent(
                job_id=job.id,
                queue=job.queue,
                job_type=job.job_type,
                from_status=from_status,
                to_status=to_status,
                attempts=job.attempts,
                actor=actor,
                timestamp=now,
                error=error,
                result=job.result if to_status == JobStatus.COMPLETED else None,
            )
        )


@asynccontextmanager
async def store_scope(
    session_factory: async_sessionmaker[AsyncSession],
    events: "EventBus | None" = None,
) -> AsyncIterator[JobStore]:
    """
    One store transaction.

    Commits on success and rolls back on error; transition events are
    published only after a successful commit.
    """
    async with session_factory() as session:
        store = JobStore(session)
        try:
            yield store
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    if events is not None and store.events:
        await events.publish_all(store.events)
