"""
Worker pool for executing jobs.

The pool runs a fixed number of slots per queue. Each slot leases a job,
runs its handler under a timeout while heartbeating the lease, and releases
the lease with the handler's outcome.
"""

import asyncio
import functools
import logging
import os
import signal
import time
from collections.abc import Mapping
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.config import Settings, get_settings
from jobqueue.constants import SPAN_EXECUTE_JOB, ErrorKind
from jobqueue.db import close_db, get_engine, init_db, verify_store
from jobqueue.db.models import Job
from jobqueue.errors import LeaseConflictError
from jobqueue.lease import LeaseManager
from jobqueue.observability.events import EventBus, create_event_bus
from jobqueue.observability.logging import (
    bind_job_context,
    bind_worker,
    clear_job_context,
    setup_logging,
)
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import get_tracer, setup_tracing, shutdown_tracing
from jobqueue.reaper import Reaper
from jobqueue.sink import ResultSink, SqlResultSink
from jobqueue.types.job import JobContext, JobOutcome, LeaseInfo
from jobqueue.worker.handlers import HandlerRegistry, ResourceFactory, execute_job, registry
from jobqueue.worker.media import MediaProcessor
from jobqueue.worker.notifications import PushGateway

logger = logging.getLogger(__name__)


def default_resource_factories() -> dict[str, ResourceFactory]:
    """Per-job dependencies of the built-in handlers."""
    return {
        "media": MediaProcessor.from_settings,
        "push_gateway": PushGateway.from_settings,
    }


def _shutdown_outcome() -> JobOutcome:
    return JobOutcome.retryable(
        ErrorKind.SHUTDOWN_INTERRUPTED,
        "Worker shut down before the handler finished",
    )


class WorkerPool:
    """
    Job worker pool that leases and executes jobs.

    Features:
    - Fixed slot count per queue (media sized to CPU, notifications wide)
    - Bounded handler execution with cancellation on timeout
    - Heartbeat to extend leases for long-running jobs
    - Graceful shutdown on SIGTERM/SIGINT with a drain timeout
    - Optional embedded reaper
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        queues: Mapping[str, int] | None = None,
        worker_id: str | None = None,
        lease_manager: LeaseManager | None = None,
        handlers: HandlerRegistry | None = None,
        events: EventBus | None = None,
        sink: ResultSink | None = None,
        resource_factories: Mapping[str, ResourceFactory] | None = None,
        run_reaper: bool | None = None,
    ):
        """
        Initialize the pool.

        Args:
            session_factory: Store sessions.
            settings: Configuration; defaults to the process settings.
            queues: Slot count per queue. Defaults to configured concurrency.
            worker_id: Lease owner identity. Defaults to hostname + PID.
            lease_manager: Lease operations; built from the store if omitted.
            handlers: Handler registry; the built-in one if omitted.
            events: Transition event bus.
            sink: Result sink handed to handlers.
            resource_factories: Builders for per-job dependencies.
            run_reaper: Run a reaper inside this pool.
        """
        self.settings = settings or get_settings()
        self._session_factory = session_factory

        self.worker_id = (
            worker_id or self.settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.queues = dict(queues) if queues is not None else {
            name: queue.concurrency for name, queue in self.settings.queues.items()
        }
        self.events = events or create_event_bus()
        self.lease_manager = lease_manager or LeaseManager(
            session_factory, events=self.events, settings=self.settings
        )
        self.handlers = handlers or registry
        self.sink = sink or SqlResultSink(session_factory)
        self.resource_factories = (
            dict(resource_factories) if resource_factories is not None else default_resource_factories()
        )

        self.poll_interval = self.settings.worker_poll_interval_seconds
        self.heartbeat_interval = self.settings.worker_heartbeat_interval_seconds
        self.drain_timeout = self.settings.worker_drain_timeout_seconds
        self.cancel_grace = self.settings.worker_cancel_grace_seconds
        self.release_retries = self.settings.worker_release_retries

        if run_reaper is None:
            run_reaper = self.settings.worker_run_reaper
        self._reaper = Reaper(self.lease_manager, settings=self.settings) if run_reaper else None
        self._reaper_task: asyncio.Task | None = None

        self._running = False
        self._stopping = asyncio.Event()
        self._slots: list[asyncio.Task] = []
        self._in_flight: dict[UUID, asyncio.Task] = {}
        # Handlers that ignored cancellation; their leases are left to expire
        self._abandoned: set[asyncio.Task] = set()
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        """
        Verify the store and start the slots.

        Raises:
            StoreUnavailableError: If the store is unreachable.
        """
        await verify_store(self._session_factory)

        logger.info(
            "Worker pool starting",
            extra={"worker_id": self.worker_id, "queues": self.queues},
        )
        self._running = True
        self._stopping.clear()

        for queue, slots in self.queues.items():
            for index in range(slots):
                self._slots.append(
                    asyncio.create_task(self._slot_loop(queue), name=f"{queue}-slot-{index}")
                )

        if self._reaper is not None:
            self._reaper_task = asyncio.create_task(self._reaper.start(), name="reaper")

    async def stop(self, drain_timeout: float | None = None) -> None:
        """
        Stop the pool gracefully.

        Slots stop leasing at once. In-flight handlers get drain_timeout
        seconds to finish; the rest are cancelled and released for an
        immediate retry.
        """
        if not self._running:
            return

        drain_timeout = self.drain_timeout if drain_timeout is None else drain_timeout
        logger.info(
            "Worker pool stopping",
            extra={"worker_id": self.worker_id, "in_flight": len(self._in_flight)},
        )
        self._running = False
        self._stopping.set()

        if self._reaper is not None:
            await self._reaper.stop()

        handlers = list(self._in_flight.values())
        if handlers:
            logger.info(f"Waiting for {len(handlers)} jobs to complete")
            _, pending = await asyncio.wait(handlers, timeout=drain_timeout)
            for task in pending:
                task.cancel()

        await asyncio.gather(*self._slots, return_exceptions=True)
        self._slots.clear()

        if self._reaper_task is not None:
            await asyncio.gather(self._reaper_task, return_exceptions=True)
            self._reaper_task = None

        for task in self._abandoned:
            task.cancel()

        logger.info("Worker pool stopped", extra={"worker_id": self.worker_id})

    async def run_until_stopped(self) -> None:
        """Start, block until request_stop() is called, then stop."""
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        """Ask a pool blocked in run_until_stopped() to shut down."""
        self._stopping.set()

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _slot_loop(self, queue: str) -> None:
        """Lease and execute jobs from one queue until the pool stops."""
        while self._running and not self._stopping.is_set():
            try:
                job = await self.lease_manager.acquire(queue, self.worker_id)
                if job is None:
                    await self._idle()
                    continue

                await self._process(job)

            except (SQLAlchemyError, OSError) as e:
                logger.warning(
                    f"Store error in worker slot: {e}",
                    extra={"worker_id": self.worker_id, "queue": queue},
                )
                await self._idle()
            except Exception as e:
                logger.exception(
                    f"Error in worker slot: {e}",
                    extra={"worker_id": self.worker_id, "queue": queue},
                )
                await self._idle()

    async def _process(self, job: Job) -> None:
        """
        Execute a leased job and release its lease.

        Args:
            job: The job, already leased by this worker.
        """
        lease = LeaseInfo.from_job(job)
        if not self._running or self._stopping.is_set():
            # Leased while the pool was shutting down
            await self._release(lease, _shutdown_outcome())
            return

        registration = self.handlers.get(job.job_type)
        timeout = (
            registration.timeout_seconds
            if registration is not None and registration.timeout_seconds
            else self.settings.timeout_for(job.job_type)
        )

        bind_job_context(str(job.id), job.queue, job.job_type, job.attempts)
        started = time.monotonic()
        context = JobContext(
            job_id=job.id,
            queue=job.queue,
            job_type=job.job_type,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            payload=job.payload,
            lease_owner=self.worker_id,
            lease_expires_at=job.lease_expires_at,
            sink=self.sink,
            renew_lease=functools.partial(
                self.lease_manager.renew, lease.job_id, lease.owner, attempt=lease.attempt
            ),
        )

        logger.info(
            "Executing job",
            extra={"job_id": str(job.id), "queue": job.queue, "attempt": job.attempts},
        )

        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(job.id))
                span.set_attribute("job_type", job.job_type)
                span.set_attribute("attempt", job.attempts)

                outcome = await self._run_with_timeout(job, lease, context, timeout)
                if outcome is not None:
                    span.set_attribute("outcome", outcome.kind.value)
        finally:
            clear_job_context()

        if outcome is None:
            return

        duration = time.monotonic() - started
        self._metrics.record_job_executed(job.queue, job.job_type, outcome.kind.value, duration)
        await self._release(lease, outcome)

    async def _run_with_timeout(
        self, job: Job, lease: LeaseInfo, context: JobContext, timeout: float
    ) -> JobOutcome | None:
        """
        Run the handler, heartbeating its lease.

        Returns:
            The outcome, or None when the handler ignored cancellation and
            the lease is left for the sweep.
        """
        task = asyncio.create_task(
            execute_job(
                context,
                handlers=self.handlers,
                resource_factories=self.resource_factories,
                settings=self.settings,
            ),
            name=f"job-{job.id}",
        )
        self._in_flight[job.id] = task
        heartbeat = asyncio.create_task(self._heartbeat(lease, task))

        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if task in done:
                if task.cancelled():
                    return _shutdown_outcome()
                return task.result()

            logger.warning(
                f"Handler exceeded {timeout}s, cancelling",
                extra={"job_id": str(job.id)},
            )
            task.cancel()
            stopped, _ = await asyncio.wait({task}, timeout=self.cancel_grace)
            if not stopped:
                logger.error(
                    "Handler ignored cancellation, leaving lease to expire",
                    extra={"job_id": str(job.id)},
                )
                self._abandoned.add(task)
                task.add_done_callback(self._abandoned.discard)
                return None

            return JobOutcome.retryable(
                ErrorKind.HANDLER_TIMEOUT,
                f"Handler for {job.job_type} exceeded {timeout}s",
                {"timeout_seconds": timeout},
            )
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._in_flight.pop(job.id, None)

    async def _heartbeat(self, lease: LeaseInfo, task: asyncio.Task) -> None:
        """
        Periodically extend a lease grant while its handler runs.

        Stops once the grant is lost; a later grant of the same job is never
        extended from here.
        """
        job_id = str(lease.job_id)
        while not task.done():
            await asyncio.sleep(self.heartbeat_interval)
            if task.done():
                return
            try:
                lease.expires_at = await self.lease_manager.renew(
                    lease.job_id, lease.owner, attempt=lease.attempt
                )
            except LeaseConflictError:
                logger.warning(
                    "Lease lost while handler is running, job may run twice",
                    extra={"job_id": job_id, "attempt": lease.attempt},
                )
                return
            except Exception as e:
                logger.exception(f"Error in heartbeat: {e}", extra={"job_id": job_id})

    async def _release(self, lease: LeaseInfo, outcome: JobOutcome) -> Job | None:
        """
        Release a lease, retrying store errors a bounded number of times.

        Returns:
            The updated job, or None if the lease is left to expire.
        """
        job_id = str(lease.job_id)
        for retry in range(1, self.release_retries + 1):
            try:
                return await self.lease_manager.release(
                    lease.job_id, lease.owner, outcome, attempt=lease.attempt
                )
            except LeaseConflictError:
                logger.warning(
                    "Lease lost before release, the sweep owns the job",
                    extra={"job_id": job_id, "worker_id": lease.owner, "attempt": lease.attempt},
                )
                return None
            except (SQLAlchemyError, OSError) as e:
                logger.warning(
                    f"Release failed: {e}",
                    extra={"job_id": job_id, "retry": retry},
                )
                await asyncio.sleep(self.poll_interval * retry)

        logger.error(
            "Giving up on release, lease will expire",
            extra={"job_id": job_id, "outcome": outcome.kind.value},
        )
        return None


async def run_async() -> None:
    """Run the worker pool asynchronously."""
    settings = get_settings()
    setup_logging(settings, component="worker")
    session_factory = await init_db()
    setup_tracing(settings, component="worker", engine=get_engine())

    pool = WorkerPool(session_factory, settings=settings)
    bind_worker(pool.worker_id)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, pool.request_stop)

    try:
        await pool.run_until_stopped()
    finally:
        await close_db()
        shutdown_tracing()


def run() -> None:
    """Run the worker pool."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
