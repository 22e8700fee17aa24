"""
Dead-letter store.
Holds snapshots of jobs that exhausted retries or failed permanently.
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.clock import utcnow
from jobqueue.db.models import DeadLetter, Job, JobAuditEntry
from jobqueue.errors import JobNotFoundError

logger = logging.getLogger(__name__)

REASON_ATTEMPTS_EXHAUSTED = "attempts_exhausted"
REASON_PERMANENT_FAILURE = "permanent_failure"
REASON_LEASE_EXPIRED = "lease_expired"


class DeadLetterRepository:
    """
    Repository for dead-letter records.

    A record is written in the same transaction that moves a job to dead, so
    every dead job has one. Requeued records stay for history and are marked
    with requeued_at.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(
        self,
        job: Job,
        reason: str,
        audit_trail: Sequence[JobAuditEntry],
    ) -> DeadLetter:
        """
        Snapshot a dead job with its full audit trail.

        Args:
            job: The job, already in dead status.
            reason: Why it died.
            audit_trail: All transitions of the job, including the last one.

        Returns:
            The new DeadLetter record.
        """
        record = DeadLetter(
            job_id=job.id,
            queue=job.queue,
            job_type=job.job_type,
            payload=job.payload,
            fingerprint=job.fingerprint,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            reason=reason,
            last_error=job.last_error,
            audit_trail=[entry.to_dict() for entry in audit_trail],
            dead_at=job.updated_at or utcnow(),
        )
        self._session.add(record)
        await self._session.flush()

        logger.warning(
            "Job added to dead-letter store",
            extra={
                "job_id": str(job.id),
                "queue": job.queue,
                "job_type": job.job_type,
                "reason": reason,
                "attempts": job.attempts,
            },
        )
        return record

    async def find_latest(self, job_id: UUID) -> DeadLetter | None:
        """Most recent dead-letter record of a job."""
        stmt = (
            select(DeadLetter)
            .where(DeadLetter.job_id == job_id)
            .order_by(DeadLetter.dead_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest(self, job_id: UUID) -> DeadLetter:
        """
        Most recent dead-letter record of a job.

        Raises:
            JobNotFoundError: If the job was never dead-lettered.
        """
        record = await self.find_latest(job_id)
        if record is None:
            raise JobNotFoundError(job_id, f"Job {job_id} is not in the dead-letter store")
        return record

    async def list_dead_letters(
        self,
        queue: str | None = None,
        job_type: str | None = None,
        include_requeued: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[DeadLetter], int]:
        """
        List dead letters, newest first.

        Returns:
            Tuple of (records, total_count).
        """
        filters = []
        if queue is not None:
            filters.append(DeadLetter.queue == queue)
        if job_type is not None:
            filters.append(DeadLetter.job_type == job_type)
        if not include_requeued:
            filters.append(DeadLetter.requeued_at.is_(None))

        count_stmt = select(func.count()).select_from(DeadLetter).where(and_(True, *filters))
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(DeadLetter)
            .where(and_(True, *filters))
            .order_by(DeadLetter.dead_at.desc())
            .limit(limit)
            .offset(offset)
        )
        records = (await self._session.execute(stmt)).scalars().all()
        return records, total

    async def mark_requeued(self, job_id: UUID, actor: str, now: datetime | None = None) -> int:
        """
        Mark a job's open dead-letter records as requeued.

        Returns:
            Number of records updated.
        """
        stmt = (
            update(DeadLetter)
            .where(and_(DeadLetter.job_id == job_id, DeadLetter.requeued_at.is_(None)))
            .values(requeued_at=now or utcnow(), requeued_by=actor)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount
