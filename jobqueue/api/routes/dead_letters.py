"""
Dead-letter triage routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.api.deps import get_async_session, get_lease_manager
from jobqueue.constants import API_V1_PREFIX
from jobqueue.db.dead_letter import DeadLetterRepository
from jobqueue.db.models import DeadLetter
from jobqueue.errors import DuplicateFingerprintError, InvalidTransitionError, JobNotFoundError
from jobqueue.lease import LeaseManager
from jobqueue.types.api import (
    DeadLetterListResponse,
    DeadLetterResponse,
    RequeueRequest,
    RequeueResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/dead-letters", tags=["Dead letters"])


def _to_response(record: DeadLetter) -> DeadLetterResponse:
    return DeadLetterResponse(
        id=record.id,
        job_id=record.job_id,
        queue=record.queue,
        job_type=record.job_type,
        payload=record.payload,
        fingerprint=record.fingerprint,
        attempts=record.attempts,
        max_attempts=record.max_attempts,
        reason=record.reason,
        last_error=record.last_error,
        audit_trail=record.audit_trail,
        dead_at=record.dead_at,
        requeued_at=record.requeued_at,
        requeued_by=record.requeued_by,
    )


@router.get(
    "",
    response_model=DeadLetterListResponse,
    summary="List dead letters",
    description="Dead-lettered jobs, newest first, filterable by queue and type.",
)
async def list_dead_letters(
    queue: str | None = Query(default=None),
    job_type: str | None = Query(default=None, alias="type"),
    include_requeued: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_async_session),
) -> DeadLetterListResponse:
    """
    List dead letters.

    Args:
        queue: Optional queue filter.
        job_type: Optional job type filter.
        include_requeued: Also list records already requeued.
        page: Page number (1-indexed).
        page_size: Number of items per page.
        session: Database session.

    Returns:
        DeadLetterListResponse with paginated records.
    """
    offset = (page - 1) * page_size
    records, total = await DeadLetterRepository(session).list_dead_letters(
        queue=queue,
        job_type=job_type,
        include_requeued=include_requeued,
        limit=page_size,
        offset=offset,
    )

    return DeadLetterListResponse(
        items=[_to_response(record) for record in records],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.get(
    "/{job_id}",
    response_model=DeadLetterResponse,
    summary="Get a dead letter",
    description="The latest dead-letter record of a job, with its full audit trail.",
)
async def get_dead_letter(
    job_id: UUID,
    session: AsyncSession = Depends(get_async_session),
) -> DeadLetterResponse:
    try:
        record = await DeadLetterRepository(session).get_latest(job_id)
    except JobNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e
    return _to_response(record)


@router.post(
    "/{job_id}/requeue",
    response_model=RequeueResponse,
    summary="Requeue a dead job",
    description="Reset a dead job's attempts and make it eligible again.",
)
async def requeue_dead_letter(
    job_id: UUID,
    request: RequeueRequest = RequeueRequest(),
    lease_manager: LeaseManager = Depends(get_lease_manager),
) -> RequeueResponse:
    """
    Requeue a dead job.

    Raises:
        HTTPException: 404 if unknown, 409 if not dead or an equivalent job
            is active again.
    """
    try:
        job = await lease_manager.requeue_dead(job_id, actor=request.actor)
    except JobNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        ) from e
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job is not dead: {e}",
        ) from e
    except DuplicateFingerprintError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"An equivalent job is already active: {e.existing_id}",
        ) from e

    return RequeueResponse(
        id=job.id,
        status=job.status,
        attempts=job.attempts,
        message="Job requeued",
    )
