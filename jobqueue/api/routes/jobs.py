"""
Job management routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.api.deps import get_async_session, get_producer
from jobqueue.constants import API_V1_PREFIX, JobStatus
from jobqueue.db.models import Job
from jobqueue.db.repository import JobStore
from jobqueue.errors import JobNotFoundError, PayloadValidationError, ResourceExhaustedError
from jobqueue.producer import EnqueueOptions, Producer
from jobqueue.types.api import (
    AuditEntryResponse,
    EnqueueRequest,
    EnqueueResponse,
    JobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


def _job_to_response(job: Job) -> JobResponse:
    """Convert a Job model to a JobResponse."""
    return JobResponse(
        id=job.id,
        queue=job.queue,
        job_type=job.job_type,
        payload=job.payload,
        fingerprint=job.fingerprint,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        available_at=job.available_at,
        lease_owner=job.lease_owner,
        lease_expires_at=job.lease_expires_at,
        last_error=job.last_error,
        result=job.result,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )


@router.post(
    "",
    response_model=EnqueueResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Enqueue a job. An active job with the same fingerprint is returned instead (200).",
)
async def enqueue_job(
    request: EnqueueRequest,
    response: Response,
    producer: Producer = Depends(get_producer),
) -> EnqueueResponse:
    """
    Enqueue a job.

    Args:
        request: Enqueue request.
        response: Used to downgrade the status code for duplicates.
        producer: Producer API.

    Returns:
        EnqueueResponse with the job id.

    Raises:
        HTTPException: 429 when the queue is saturated, 422 for a bad payload.
    """
    options = EnqueueOptions(
        fingerprint=request.fingerprint,
        max_attempts=request.max_attempts,
        not_before=request.not_before,
        dedupe=request.dedupe,
    )
    try:
        job, created = await producer.submit(
            request.queue, request.job_type, request.payload, options
        )
    except ResourceExhaustedError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
        ) from e
    except PayloadValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    if not created:
        response.status_code = status.HTTP_200_OK

    return EnqueueResponse(
        id=job.id,
        status=job.status,
        created=created,
        message="Job enqueued" if created else "Job already active (deduplicated)",
    )


@router.get(
    "/stats/summary",
    summary="Get job statistics",
    description="Get job counts by status and queue depth.",
)
async def get_job_stats(
    queue: str | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    """
    Get job statistics.

    Args:
        queue: Optional queue filter.
        session: Database session.

    Returns:
        Dictionary with counts by status and, for one queue, its depth.
    """
    store = JobStore(session)
    stats = await store.stats(queue)
    summary: dict = {"stats": stats}
    if queue is not None:
        summary["queue_depth"] = await store.queue_depth(queue)
    return summary


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: If job not found.
    """
    try:
        job = await JobStore(session).get(job_id)
    except JobNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        ) from e

    return _job_to_response(job)


@router.get(
    "/{job_id}/audit",
    response_model=list[AuditEntryResponse],
    summary="Get job audit trail",
    description="Every status transition of a job, oldest first.",
)
async def get_job_audit(
    job_id: UUID,
    session: AsyncSession = Depends(get_async_session),
) -> list[AuditEntryResponse]:
    store = JobStore(session)
    if await store.find(job_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return [
        AuditEntryResponse(
            from_status=entry.from_status,
            to_status=entry.to_status,
            actor=entry.actor,
            attempts=entry.attempts,
            error=entry.error,
            created_at=entry.created_at,
        )
        for entry in await store.audit_trail(job_id)
    ]


@router.get(
    "",
    summary="List jobs",
    description="List jobs with optional queue and status filters.",
)
async def list_jobs(
    queue: str | None = Query(default=None),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    """
    List jobs, newest first.

    Args:
        queue: Optional queue filter.
        job_status: Optional status filter.
        page: Page number (1-indexed).
        page_size: Number of items per page.
        session: Database session.
    """
    offset = (page - 1) * page_size
    jobs, total = await JobStore(session).list_jobs(
        queue=queue,
        status=job_status,
        limit=page_size,
        offset=offset,
    )

    return {
        "jobs": [_job_to_response(job).model_dump(mode="json") for job in jobs],
        "total": total,
        "page": page,
        "page_size": page_size,
        "has_next": (page * page_size) < total,
    }
