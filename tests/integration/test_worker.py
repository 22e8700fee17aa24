"""
Integration tests for the worker pool.
"""

import asyncio
import sys
from collections.abc import AsyncGenerator, Callable
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import utcnow
from jobqueue.config import Settings
from jobqueue.constants import JobStatus
from jobqueue.db import build_engine, build_session_factory
from jobqueue.db.dead_letter import DeadLetterRepository
from jobqueue.db.repository import JobStore
from jobqueue.errors import StoreUnavailableError
from jobqueue.lease import LeaseManager
from jobqueue.observability.events import EventBus
from jobqueue.producer import EnqueueOptions, Producer, enqueue_media_processing
from jobqueue.reaper import Reaper
from jobqueue.sink import SqlResultSink
from jobqueue.types.events import TransitionEvent
from jobqueue.types.job import JobContext, JobOutcome, LeaseInfo
from jobqueue.types.payloads import RenditionSpec
from jobqueue.worker import HandlerRegistry, WorkerPool
from jobqueue.worker.media import MediaProcessor, Transcoder

TEST_QUEUE = "default"


@pytest.fixture
def handlers() -> HandlerRegistry:
    """A registry of test handlers; calls are counted per job."""
    handlers = HandlerRegistry()
    handlers.calls = {}
    handlers.started = asyncio.Event()

    def count(context: JobContext) -> int:
        handlers.calls[context.job_id] = handlers.calls.get(context.job_id, 0) + 1
        return handlers.calls[context.job_id]

    @handlers.register("echo")
    async def echo(context: JobContext) -> dict:
        count(context)
        return {"echo": context.payload}

    @handlers.register("always_fails")
    async def always_fails(context: JobContext) -> None:
        count(context)
        raise RuntimeError(f"attempt {context.attempt} failed")

    @handlers.register("flaky")
    async def flaky(context: JobContext) -> dict:
        if count(context) < 3:
            raise ConnectionError("upstream reset")
        return {"attempt": context.attempt}

    @handlers.register("sleepy", timeout_seconds=0.3)
    async def sleepy(context: JobContext) -> None:
        count(context)
        await asyncio.sleep(10)

    @handlers.register("long_running")
    async def long_running(context: JobContext) -> dict:
        count(context)
        handlers.started.set()
        await asyncio.sleep(context.payload.get("seconds", 10))
        return {"done": True}

    return handlers


@pytest.fixture
def make_pool(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
    lease_manager: LeaseManager,
    handlers: HandlerRegistry,
    event_bus: EventBus,
    result_sink: SqlResultSink,
) -> Callable[..., WorkerPool]:
    def make(**overrides) -> WorkerPool:
        options = {
            "settings": test_settings,
            "queues": {TEST_QUEUE: 2},
            "worker_id": "test-worker",
            "lease_manager": lease_manager,
            "handlers": handlers,
            "events": event_bus,
            "sink": result_sink,
            "resource_factories": {},
            "run_reaper": False,
        }
        options.update(overrides)
        return WorkerPool(session_factory, **options)

    return make


@pytest_asyncio.fixture
async def pool(make_pool: Callable[..., WorkerPool]) -> AsyncGenerator[WorkerPool]:
    """A started pool over the default queue."""
    pool = make_pool()
    await pool.start()
    yield pool
    await pool.stop(drain_timeout=0.5)


async def enqueue(producer: Producer, job_type: str, payload: dict | None = None, **options) -> UUID:
    return await producer.enqueue(TEST_QUEUE, job_type, payload or {}, EnqueueOptions(**options))


class TestWorkerPool:
    """End-to-end job processing through the pool."""

    async def test_job_completes(
        self,
        pool: WorkerPool,
        producer: Producer,
        wait_for_status,
        published_events: list[TransitionEvent],
    ):
        job_id = await enqueue(producer, "echo", {"message": "hi"})

        job = await wait_for_status(job_id, [JobStatus.COMPLETED])

        assert job.result == {"echo": {"message": "hi"}}
        assert job.attempts == 1
        assert job.lease_owner is None
        completions = [e for e in published_events if e.is_completion]
        assert completions[0].job_id == job_id
        assert completions[0].result == {"echo": {"message": "hi"}}

    async def test_failing_job_is_dead_lettered_after_max_attempts(
        self,
        pool: WorkerPool,
        producer: Producer,
        handlers: HandlerRegistry,
        wait_for_status,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        job_id = await enqueue(producer, "always_fails", max_attempts=3)

        job = await wait_for_status(job_id, [JobStatus.DEAD])

        assert job.attempts == 3
        assert handlers.calls[job_id] == 3
        assert job.last_error["kind"] == "handler_error"
        assert "attempt 3 failed" in job.last_error["message"]

        async with session_factory() as session:
            trail = await JobStore(session).audit_trail(job_id)
            record = await DeadLetterRepository(session).get_latest(job_id)

        assert [entry.to_status for entry in trail] == [
            JobStatus.PENDING,
            JobStatus.LEASED,
            JobStatus.FAILED_RETRYABLE,
            JobStatus.LEASED,
            JobStatus.FAILED_RETRYABLE,
            JobStatus.LEASED,
            JobStatus.DEAD,
        ]
        failures = [entry for entry in trail if entry.error is not None]
        assert [entry.error["attempt"] for entry in failures] == [1, 2, 3]
        assert record.reason == "attempts_exhausted"
        assert len(record.audit_trail) == len(trail)

    async def test_flaky_job_eventually_completes(
        self,
        pool: WorkerPool,
        producer: Producer,
        handlers: HandlerRegistry,
        wait_for_status,
    ):
        job_id = await enqueue(producer, "flaky", max_attempts=5)

        job = await wait_for_status(job_id, [JobStatus.COMPLETED])

        assert job.attempts == 3
        assert job.result == {"attempt": 3}
        assert handlers.calls[job_id] == 3

    async def test_handler_timeout(
        self,
        pool: WorkerPool,
        producer: Producer,
        wait_for_status,
    ):
        job_id = await enqueue(producer, "sleepy", max_attempts=1)

        job = await wait_for_status(job_id, [JobStatus.DEAD])

        assert job.last_error["kind"] == "handler_timeout"
        assert job.last_error["details"] == {"timeout_seconds": 0.3}

    async def test_unknown_job_type_is_dead_lettered(
        self,
        pool: WorkerPool,
        producer: Producer,
        wait_for_status,
    ):
        job_id = await enqueue(producer, "nobody.handles.this", max_attempts=5)

        job = await wait_for_status(job_id, [JobStatus.DEAD])

        assert job.attempts == 1
        assert job.last_error["kind"] == "unknown_job_type"

    async def test_jobs_processed_once_each(
        self,
        pool: WorkerPool,
        producer: Producer,
        handlers: HandlerRegistry,
        wait_for_status,
    ):
        job_ids = [await enqueue(producer, "echo", {"n": i}) for i in range(6)]

        for job_id in job_ids:
            await wait_for_status(job_id, [JobStatus.COMPLETED])

        assert all(handlers.calls[job_id] == 1 for job_id in job_ids)


class TestShutdown:
    """Graceful shutdown behavior."""

    async def test_drain_lets_short_jobs_finish(
        self,
        make_pool: Callable[..., WorkerPool],
        producer: Producer,
        handlers: HandlerRegistry,
        load_job,
    ):
        pool = make_pool()
        await pool.start()
        job_id = await enqueue(producer, "long_running", {"seconds": 0.3})
        await asyncio.wait_for(handlers.started.wait(), timeout=5)

        await pool.stop(drain_timeout=5)

        assert (await load_job(job_id)).status == JobStatus.COMPLETED

    async def test_interrupted_job_is_retryable_immediately(
        self,
        make_pool: Callable[..., WorkerPool],
        producer: Producer,
        handlers: HandlerRegistry,
        load_job,
    ):
        pool = make_pool()
        await pool.start()
        job_id = await enqueue(producer, "long_running", {"seconds": 30}, max_attempts=3)
        await asyncio.wait_for(handlers.started.wait(), timeout=5)

        await pool.stop(drain_timeout=0.1)

        job = await load_job(job_id)
        assert job.status == JobStatus.FAILED_RETRYABLE
        assert job.attempts == 1
        assert job.last_error["kind"] == "shutdown_interrupted"
        assert job.available_at <= utcnow()
        assert not pool.running

    async def test_run_until_stopped(
        self,
        make_pool: Callable[..., WorkerPool],
        producer: Producer,
        wait_for_status,
    ):
        pool = make_pool()
        runner = asyncio.create_task(pool.run_until_stopped())
        job_id = await enqueue(producer, "echo")

        await wait_for_status(job_id, [JobStatus.COMPLETED])
        pool.request_stop()
        await asyncio.wait_for(runner, timeout=5)

        assert not pool.running


class TestCrashRecovery:
    """Expired leases of crashed workers are recovered."""

    async def test_embedded_reaper_recovers_job(
        self,
        make_pool: Callable[..., WorkerPool],
        producer: Producer,
        lease_manager: LeaseManager,
        wait_for_status,
    ):
        job_id = await enqueue(producer, "echo", max_attempts=3)
        # A worker that leases the job and dies without releasing it
        crashed = await lease_manager.acquire(TEST_QUEUE, "crashed-worker", lease_duration=0.2)
        assert crashed.id == job_id

        pool = make_pool(run_reaper=True)
        await pool.start()
        try:
            job = await wait_for_status(job_id, [JobStatus.COMPLETED])
        finally:
            await pool.stop()

        assert job.attempts == 2

    async def test_slot_release_leaves_regranted_job_to_sibling_slot(
        self,
        make_pool: Callable[..., WorkerPool],
        producer: Producer,
        lease_manager: LeaseManager,
        load_job,
    ):
        pool = make_pool()
        job_id = await enqueue(producer, "echo", max_attempts=3)
        stale = LeaseInfo.from_job(
            await lease_manager.acquire(TEST_QUEUE, pool.worker_id, lease_duration=0.01)
        )
        await asyncio.sleep(0.05)
        await lease_manager.reclaim_expired()
        sibling = await lease_manager.acquire(TEST_QUEUE, pool.worker_id)
        assert sibling.id == job_id
        assert stale.owner == sibling.lease_owner

        released = await pool._release(stale, JobOutcome.succeeded({"from": "stale"}))

        assert released is None
        job = await load_job(job_id)
        assert job.status == JobStatus.LEASED
        assert job.attempts == 2

    async def test_standalone_reaper(
        self,
        producer: Producer,
        lease_manager: LeaseManager,
        wait_for_status,
    ):
        job_id = await enqueue(producer, "echo", max_attempts=3)
        await lease_manager.acquire(TEST_QUEUE, "crashed-worker", lease_duration=0.1)

        reaper = Reaper(lease_manager, interval_seconds=0.05)
        task = asyncio.create_task(reaper.start())
        try:
            job = await wait_for_status(job_id, [JobStatus.PENDING])
        finally:
            await reaper.stop()
            await asyncio.wait_for(task, timeout=5)

        assert job.last_error["kind"] == "lease_expired"
        assert not reaper.running


class TestStartup:
    async def test_missing_schema_fails_fast(
        self, test_settings: Settings, handlers: HandlerRegistry, tmp_path
    ):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", test=True)
        pool = WorkerPool(
            build_session_factory(engine),
            settings=test_settings,
            queues={TEST_QUEUE: 1},
            handlers=handlers,
            resource_factories={},
            run_reaper=False,
        )
        try:
            with pytest.raises(StoreUnavailableError):
                await pool.start()

            assert not pool.running
        finally:
            await engine.dispose()


class TestMediaPipeline:
    """The built-in media handler driven through the pool."""

    async def test_media_job_marks_renditions_ready(
        self,
        make_pool: Callable[..., WorkerPool],
        producer: Producer,
        result_sink: SqlResultSink,
        wait_for_status,
        tmp_path,
    ):
        source = tmp_path / "upload.mov"
        source.write_bytes(b"movie")

        def write_output(tool: str, spec: RenditionSpec, src: str, output: str) -> list[str]:
            script = "import sys; open(sys.argv[1], 'wb').write(b'frames')"
            return [sys.executable, "-c", script, output]

        def media_factory(settings: Settings) -> MediaProcessor:
            transcoder = Transcoder(sys.executable, timeout_seconds=10, command_builder=write_output)
            return MediaProcessor(transcoder, str(tmp_path / "renditions"))

        job_id = await enqueue_media_processing(
            producer,
            result_sink,
            {
                "asset_key": "assets/1",
                "source_path": str(source),
                "renditions": [{"name": "720p", "width": 1280}, {"name": "thumb", "kind": "thumbnail", "width": 320}],
            },
        )

        pool = make_pool(
            handlers=None,
            queues={"media": 1},
            resource_factories={"media": media_factory},
        )
        await pool.start()
        try:
            job = await wait_for_status(job_id, [JobStatus.COMPLETED, JobStatus.DEAD])
        finally:
            await pool.stop()

        assert job.status == JobStatus.COMPLETED
        asset = await result_sink.read("media_assets", "assets/1")
        assert asset["state"] == "renditions_ready"
        assert [r["name"] for r in asset["renditions"]] == ["720p", "thumb"]
        assert asset["missing"] == []
