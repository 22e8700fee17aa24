"""
Expired-lease sweeper.

A lease whose deadline passes belongs to a worker that crashed or stalled.
The sweeper hands such jobs back to the queue (or to the dead-letter store
when the expired lease was their final attempt), which is what turns a
worker crash into a redelivery.
"""

import asyncio
import logging
import signal

from sqlalchemy.exc import SQLAlchemyError

from jobqueue.config import Settings, get_settings
from jobqueue.db import close_db, get_engine, init_db
from jobqueue.lease import LeaseManager
from jobqueue.observability.events import create_event_bus
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.tracing import setup_tracing, shutdown_tracing

logger = logging.getLogger(__name__)


class Reaper:
    """
    Periodic sweep of expired leases.

    Safe to run in several processes at once: every reclaim is a conditional
    transition, so a job is reclaimed by at most one sweeper.
    """

    def __init__(
        self,
        lease_manager: LeaseManager,
        interval_seconds: float | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.lease_manager = lease_manager
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.batch_size = settings.reaper_batch_size
        self.total_reclaimed = 0
        self._wake = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Sweep every interval until stop() is called."""
        self._running = True
        self._wake.clear()
        logger.info("Reaper started", extra={"interval_seconds": self.interval})

        while self._running:
            try:
                await self.run_once()
            except (SQLAlchemyError, OSError) as e:
                logger.warning(f"Lease sweep failed, retrying next interval: {e}")

            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

        logger.info("Reaper stopped", extra={"total_reclaimed": self.total_reclaimed})

    async def stop(self) -> None:
        self._running = False
        self._wake.set()

    async def run_once(self) -> int:
        """
        Reclaim every lease expired right now.

        Sweeps batch after batch while batches come back full, so a backlog
        left by a crashed pool is cleared in one pass.

        Returns:
            Number of jobs reclaimed.
        """
        reclaimed = 0
        while True:
            batch = await self.lease_manager.reclaim_expired(limit=self.batch_size)
            reclaimed += batch
            if batch < self.batch_size:
                break

        if reclaimed:
            self.total_reclaimed += reclaimed
            logger.info("Reclaimed expired leases", extra={"reclaimed": reclaimed})
        return reclaimed


async def run_async() -> None:
    settings = get_settings()
    setup_logging(settings, component="reaper")
    session_factory = await init_db()
    setup_tracing(settings, component="reaper", engine=get_engine())

    reaper = Reaper(
        LeaseManager(session_factory, events=create_event_bus(), settings=settings),
        settings=settings,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: loop.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await close_db()
        shutdown_tracing()


def run() -> None:
    """Entry point of ``jobqueue-reaper``."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
