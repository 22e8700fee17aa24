"""
Pytest configuration and shared fixtures.
"""

import asyncio
import os
import random
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterable
from uuid import UUID

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobqueue.api.main import create_app
from jobqueue.config import QueueSettings, Settings
from jobqueue.constants import JobStatus
from jobqueue.db import Base, JobStore, build_engine, build_session_factory
from jobqueue.db.models import Job
from jobqueue.lease import LeaseManager
from jobqueue.observability.events import EventBus, create_event_bus
from jobqueue.producer import Producer
from jobqueue.retry import RetryPolicy
from jobqueue.sink import SqlResultSink
from jobqueue.types.events import TransitionEvent

# Set TEST_DATABASE_URL to run against PostgreSQL; defaults to a temporary SQLite file
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

TEST_QUEUE = "default"


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'jobqueue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with a fresh schema."""
    engine = build_engine(database_url, test=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings with short intervals."""
    return Settings(
        database_url=database_url,
        log_level="DEBUG",
        log_format="console",
        worker_poll_interval_seconds=0.05,
        worker_heartbeat_interval_seconds=0.2,
        worker_drain_timeout_seconds=2.0,
        worker_cancel_grace_seconds=0.5,
        worker_run_reaper=False,
        reaper_interval_seconds=0.1,
        default_max_attempts=5,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.05,
        handler_timeout_seconds=5.0,
        queues={
            TEST_QUEUE: QueueSettings(concurrency=2, lease_duration_seconds=5),
            "media": QueueSettings(concurrency=1, lease_duration_seconds=5),
            "notifications": QueueSettings(concurrency=2, lease_duration_seconds=5),
        },
    )


@pytest.fixture
def published_events() -> list[TransitionEvent]:
    """Transition events seen by the event bus."""
    return []


@pytest.fixture
def event_bus(published_events: list[TransitionEvent]) -> EventBus:
    return create_event_bus(published_events.append)


@pytest.fixture
def retry_policy(test_settings: Settings) -> RetryPolicy:
    return RetryPolicy(test_settings, rng=random.Random(7))


@pytest.fixture
def lease_manager(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    event_bus: EventBus,
    retry_policy: RetryPolicy,
) -> LeaseManager:
    return LeaseManager(
        session_factory,
        retry_policy=retry_policy,
        events=event_bus,
        settings=test_settings,
    )


@pytest.fixture
def producer(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    event_bus: EventBus,
) -> Producer:
    return Producer(session_factory, settings=test_settings, events=event_bus)


@pytest.fixture
def result_sink(session_factory: async_sessionmaker[AsyncSession]) -> SqlResultSink:
    return SqlResultSink(session_factory)


@pytest.fixture
def load_job(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[UUID], Awaitable[Job]]:
    """Read a job in a fresh session."""

    async def load(job_id: UUID) -> Job:
        async with session_factory() as session:
            return await JobStore(session).get(job_id)

    return load


@pytest.fixture
def wait_for_status(
    load_job: Callable[[UUID], Awaitable[Job]],
) -> Callable[..., Awaitable[Job]]:
    """Poll a job until it reaches one of the given statuses."""

    async def wait(
        job_id: UUID,
        statuses: Iterable[JobStatus],
        timeout: float = 10.0,
    ) -> Job:
        wanted = set(statuses)
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            job = await load_job(job_id)
            if job.status in wanted:
                return job
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(
                    f"Job {job_id} stuck in {job.status}, expected one of {sorted(wanted)}"
                )
            await asyncio.sleep(0.05)

    return wait


@pytest.fixture
def app(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> FastAPI:
    """Create a FastAPI app bound to the test store."""
    return create_app(session_factory=session_factory, settings=test_settings)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
