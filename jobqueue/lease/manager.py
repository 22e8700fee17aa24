"""
Lease manager.

Grants exclusive, time-bounded ownership of jobs to workers, and is the only
component that moves jobs out of the leased state: on release, on lease
expiry (the sweep) and on manual requeue from the dead-letter store.
"""

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import utcnow
from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    ACTOR_ADMIN,
    ACTOR_REAPER,
    SPAN_ACQUIRE_LEASE,
    SPAN_RELEASE_LEASE,
    SPAN_SWEEP_LEASES,
    ErrorKind,
    JobStatus,
    OutcomeKind,
)
from jobqueue.db.dead_letter import (
    REASON_ATTEMPTS_EXHAUSTED,
    REASON_LEASE_EXPIRED,
    REASON_PERMANENT_FAILURE,
    DeadLetterRepository,
)
from jobqueue.db.models import Job
from jobqueue.db.repository import JobStore, store_scope
from jobqueue.errors import (
    DuplicateFingerprintError,
    InvalidTransitionError,
    LeaseConflictError,
    TransitionConflictError,
)
from jobqueue.observability.events import EventBus
from jobqueue.observability.tracing import get_tracer
from jobqueue.retry import RetryPolicy
from jobqueue.types.job import JobError, JobOutcome

logger = logging.getLogger(__name__)

_LEASE_CLEARED: dict[str, Any] = {"lease_owner": None, "lease_expires_at": None}


class LeaseManager:
    """
    Lease lifecycle on top of the job store.

    Features:
    - FIFO acquisition per queue with conditional leased transition
    - Lease renewal for long-running handlers
    - Release with success / retryable / permanent outcomes
    - Expired-lease sweep (crash recovery, at-least-once delivery)
    - Dead-lettering with the full audit trail
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_policy: RetryPolicy | None = None,
        events: EventBus | None = None,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._retry = retry_policy or RetryPolicy(self._settings)
        self._events = events

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    def lease_duration_for(self, queue: str) -> float:
        return float(self._settings.queue_settings(queue).lease_duration_seconds)

    async def acquire(
        self,
        queue: str,
        worker_id: str,
        lease_duration: float | None = None,
    ) -> Job | None:
        """
        Lease the oldest eligible job in a queue.

        Args:
            queue: Queue to pull from.
            worker_id: Lease owner to record.
            lease_duration: Seconds until the lease expires.

        Returns:
            The leased Job, or None if nothing is eligible.
        """
        duration = lease_duration or self.lease_duration_for(queue)
        retries = self._settings.worker_acquire_conflict_retries

        with get_tracer().start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
            span.set_attribute("queue", queue)
            span.set_attribute("worker_id", worker_id)

            for _ in range(retries + 1):
                try:
                    async with store_scope(self._session_factory, self._events) as store:
                        now = utcnow()
                        candidate = await store.next_eligible(queue, now)
                        if candidate is None:
                            return None

                        job = await store.transition(
                            candidate.id,
                            candidate.status,
                            JobStatus.LEASED,
                            actor=worker_id,
                            fields={
                                "lease_owner": worker_id,
                                "lease_expires_at": now + timedelta(seconds=duration),
                                "attempts": Job.attempts + 1,
                                "updated_at": now,
                            },
                            guards=(Job.available_at <= now,),
                        )
                except TransitionConflictError:
                    logger.debug(
                        "Lost lease race, retrying",
                        extra={"queue": queue, "worker_id": worker_id},
                    )
                    continue

                span.set_attribute("job_id", str(job.id))
                return job

        return None

    async def renew(
        self,
        job_id: UUID,
        worker_id: str,
        new_duration: float | None = None,
        *,
        attempt: int | None = None,
    ) -> datetime:
        """
        Extend an active lease.

        Args:
            job_id: Leased job.
            worker_id: Lease owner.
            new_duration: Seconds from now; the queue's lease duration if omitted.
            attempt: Attempt number of the grant being extended. A later
                grant of the job under the same owner is left untouched.

        Returns:
            The new expiry time.

        Raises:
            LeaseConflictError: If worker_id does not hold an unexpired lease.
        """
        async with store_scope(self._session_factory) as store:
            now = utcnow()
            if new_duration is None:
                job = await store.get(job_id)
                new_duration = self.lease_duration_for(job.queue)
            expires_at = now + timedelta(seconds=new_duration)
            if not await store.touch_lease(job_id, worker_id, expires_at, now, attempt=attempt):
                raise LeaseConflictError(job_id, worker_id)

        logger.debug(
            "Extended lease",
            extra={"job_id": str(job_id), "worker_id": worker_id},
        )
        return expires_at

    async def release(
        self,
        job_id: UUID,
        worker_id: str,
        outcome: JobOutcome,
        *,
        attempt: int | None = None,
    ) -> Job:
        """
        Give up a lease with the outcome of the attempt.

        Success completes the job. A retryable failure backs off, or
        dead-letters the job if this was its final attempt. A permanent
        failure dead-letters it regardless of remaining attempts.

        With attempt given, only that grant is released; a grant reclaimed
        by the sweep and leased again is left to its new holder.

        Raises:
            LeaseConflictError: If worker_id no longer holds the lease.
        """
        with get_tracer().start_as_current_span(SPAN_RELEASE_LEASE) as span:
            span.set_attribute("job_id", str(job_id))
            span.set_attribute("outcome", outcome.kind.value)

            async with store_scope(self._session_factory, self._events) as store:
                job = await store.get(job_id)
                if job.status != JobStatus.LEASED or job.lease_owner != worker_id:
                    raise LeaseConflictError(job_id, worker_id)
                if attempt is not None and job.attempts != attempt:
                    raise LeaseConflictError(
                        job_id,
                        worker_id,
                        f"Attempt {attempt} of job {job_id} was superseded by attempt {job.attempts}",
                    )

                now = utcnow()
                owner_guard = (Job.lease_owner == worker_id, Job.attempts == job.attempts)

                if outcome.success:
                    return await store.transition(
                        job_id,
                        JobStatus.LEASED,
                        JobStatus.COMPLETED,
                        actor=worker_id,
                        fields={
                            **_LEASE_CLEARED,
                            "result": outcome.result,
                            "completed_at": now,
                            "updated_at": now,
                        },
                        guards=owner_guard,
                    )

                error = outcome.error or JobError(
                    kind=ErrorKind.HANDLER_ERROR,
                    message="Handler reported failure without an error",
                )
                error_record = error.to_record(job.attempts, now)
                decision = self._retry.decide(
                    job.attempts, job.max_attempts, job.job_type, outcome, now
                )

                if decision.is_terminal:
                    reason = (
                        REASON_PERMANENT_FAILURE
                        if outcome.kind == OutcomeKind.PERMANENT_FAILURE
                        else REASON_ATTEMPTS_EXHAUSTED
                    )
                    return await self._bury(
                        store,
                        job_id,
                        actor=worker_id,
                        error=error_record,
                        reason=reason,
                        now=now,
                        guards=owner_guard,
                    )

                return await store.transition(
                    job_id,
                    JobStatus.LEASED,
                    JobStatus.FAILED_RETRYABLE,
                    actor=worker_id,
                    fields={
                        **_LEASE_CLEARED,
                        "last_error": error_record,
                        "available_at": decision.available_at,
                        "updated_at": now,
                    },
                    error=error_record,
                    guards=owner_guard,
                )

    async def reclaim_expired(self, now: datetime | None = None, limit: int | None = None) -> int:
        """
        Sweep expired leases.

        The owning worker is presumed dead. Jobs with attempts left go back to
        pending; jobs whose final attempt expired are dead-lettered.

        Returns:
            Number of reclaimed jobs.
        """
        limit = limit or self._settings.reaper_batch_size
        reclaimed = 0

        with get_tracer().start_as_current_span(SPAN_SWEEP_LEASES) as span:
            async with store_scope(self._session_factory, self._events) as store:
                now = now or utcnow()
                for job in await store.expired_leases(now, limit):
                    guards = (Job.lease_expires_at < now, Job.lease_owner == job.lease_owner)
                    error_record = JobError(
                        kind=ErrorKind.LEASE_EXPIRED,
                        message=f"Lease held by {job.lease_owner} expired at {job.lease_expires_at.isoformat()}",
                    ).to_record(job.attempts, now)

                    try:
                        if job.attempts >= job.max_attempts:
                            await self._bury(
                                store,
                                job.id,
                                actor=ACTOR_REAPER,
                                error=error_record,
                                reason=REASON_LEASE_EXPIRED,
                                now=now,
                                guards=guards,
                            )
                        else:
                            await store.transition(
                                job.id,
                                JobStatus.LEASED,
                                JobStatus.PENDING,
                                actor=ACTOR_REAPER,
                                fields={
                                    **_LEASE_CLEARED,
                                    "last_error": error_record,
                                    "available_at": now,
                                    "updated_at": now,
                                },
                                error=error_record,
                                guards=guards,
                            )
                    except TransitionConflictError:
                        # Released or renewed since the scan
                        continue
                    reclaimed += 1

            span.set_attribute("reclaimed", reclaimed)

        if reclaimed:
            logger.info(f"Reclaimed {reclaimed} jobs with expired leases")
        return reclaimed

    async def requeue_dead(self, job_id: UUID, actor: str = ACTOR_ADMIN) -> Job:
        """
        Manually requeue a dead job with a fresh attempt budget.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidTransitionError: If the job is not dead.
            DuplicateFingerprintError: If an equivalent job is active again.
        """
        async with store_scope(self._session_factory, self._events) as store:
            job = await store.get(job_id)
            if job.status != JobStatus.DEAD:
                raise InvalidTransitionError(job.status, JobStatus.PENDING)

            fingerprint = job.fingerprint if job.dedupe else None
            if fingerprint is not None:
                active = await store.find_active_by_fingerprint(fingerprint)
                if active is not None:
                    raise DuplicateFingerprintError(fingerprint, active.id)

            now = utcnow()
            try:
                async with store.session.begin_nested():
                    job = await store.transition(
                        job_id,
                        JobStatus.DEAD,
                        JobStatus.PENDING,
                        actor=actor,
                        fields={
                            **_LEASE_CLEARED,
                            "attempts": 0,
                            "available_at": now,
                            "completed_at": None,
                            "updated_at": now,
                        },
                    )
            except IntegrityError as e:
                # An equivalent job was inserted after the lookup above
                if fingerprint is None:
                    raise
                active = await store.find_active_by_fingerprint(fingerprint)
                if active is None:
                    raise
                raise DuplicateFingerprintError(fingerprint, active.id) from e
            await DeadLetterRepository(store.session).mark_requeued(job_id, actor, now)

        logger.info(
            "Job requeued from dead-letter store",
            extra={"job_id": str(job_id), "actor": actor},
        )
        return job

    async def _bury(
        self,
        store: JobStore,
        job_id: UUID,
        *,
        actor: str,
        error: dict[str, Any],
        reason: str,
        now: datetime,
        guards: tuple = (),
    ) -> Job:
        """Move a leased job to dead and copy it into the dead-letter store."""
        job = await store.transition(
            job_id,
            JobStatus.LEASED,
            JobStatus.DEAD,
            actor=actor,
            fields={
                **_LEASE_CLEARED,
                "last_error": error,
                "completed_at": now,
                "updated_at": now,
            },
            error=error,
            guards=guards,
        )
        await store.session.flush()
        trail = await store.audit_trail(job_id)
        await DeadLetterRepository(store.session).add(job, reason, trail)
        return job
