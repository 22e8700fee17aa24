"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue import __version__
from jobqueue.api.routes import dead_letters_router, health_router, jobs_router
from jobqueue.config import Settings, get_settings
from jobqueue.db import close_db, get_engine, init_db
from jobqueue.lease import LeaseManager
from jobqueue.observability.events import create_event_bus
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import get_metrics, setup_metrics
from jobqueue.observability.tracing import instrument_fastapi, setup_tracing, shutdown_tracing
from jobqueue.producer import Producer

logger = logging.getLogger(__name__)


def wire_state(
    app: FastAPI,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> None:
    """Attach the store and the services built on it to the app."""
    events = create_event_bus()
    app.state.session_factory = session_factory
    app.state.events = events
    app.state.producer = Producer(session_factory, settings=settings, events=events)
    app.state.lease_manager = LeaseManager(session_factory, events=events, settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events. A session factory passed to
    create_app() is used as is and left open.
    """
    # Startup
    settings: Settings = app.state.settings
    setup_logging(settings, component="api")
    setup_metrics()

    owns_db = app.state.session_factory is None
    if owns_db:
        wire_state(app, await init_db(), settings)
    setup_tracing(settings, component="api", engine=get_engine() if owns_db else None)

    logger.info("Application started")

    yield

    # Shutdown
    if owns_db:
        await close_db()
    shutdown_tracing()
    logger.info("Application shutdown")


def create_app(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        session_factory: Use this store instead of initializing one at startup.
        settings: Configuration; defaults to the process settings.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Job Queue API",
        description="Durable background jobs: enqueue, inspection and dead-letter triage",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings
    app.state.session_factory = None
    if session_factory is not None:
        wire_state(app, session_factory, settings)

    @app.middleware("http")
    async def count_requests(request: Request, call_next):
        response = await call_next(request)
        route = request.scope.get("route")
        endpoint = getattr(route, "path", "unmatched")
        get_metrics().record_api_request(request.method, endpoint, response.status_code)
        return response

    # Include routers
    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(dead_letters_router)

    # Instrument with OpenTelemetry
    if settings.otel_enabled:
        instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()
    app = create_app(settings=settings)

    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
