"""
Probes and the Prometheus scrape endpoint.
"""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue import __version__
from jobqueue.api.deps import get_app_settings, get_session_factory
from jobqueue.clock import utcnow
from jobqueue.config import Settings
from jobqueue.db import JobStore, verify_store
from jobqueue.errors import StoreUnavailableError
from jobqueue.observability.metrics import get_metrics
from jobqueue.types.api import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _queue_depths(
    session_factory: async_sessionmaker[AsyncSession], settings: Settings
) -> dict[str, int]:
    async with session_factory() as session:
        store = JobStore(session)
        return {queue: await store.queue_depth(queue) for queue in sorted(settings.queues)}


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> HealthResponse:
    """
    Report store reachability and the depth of every configured queue.

    A store failure degrades the response instead of failing it.
    """
    try:
        depths = await _queue_depths(session_factory, settings)
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Health check could not reach the store: {e}")
        depths = None

    return HealthResponse(
        status="healthy" if depths is not None else "degraded",
        version=__version__,
        database="healthy" if depths is not None else "unhealthy",
        queues=depths or {},
        timestamp=utcnow(),
    )


@router.get("/ready", summary="Readiness check")
async def readiness_check(
    response: Response,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    """Ready once the store answers job queries; 503 until then."""
    try:
        await verify_store(session_factory)
    except StoreUnavailableError as e:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"ready": False, "reason": str(e)}
    return {"ready": True}


@router.get("/live", summary="Liveness check")
async def liveness_check() -> dict:
    return {"alive": True}


@router.get("/metrics", summary="Prometheus metrics")
async def metrics(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
) -> Response:
    """Refresh the queue depth gauges, then render the registry."""
    collector = get_metrics()
    try:
        for queue, depth in (await _queue_depths(session_factory, settings)).items():
            collector.update_queue_depth(queue, depth)
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Queue depth refresh failed: {e}")

    return Response(content=collector.render(), media_type=collector.content_type)
