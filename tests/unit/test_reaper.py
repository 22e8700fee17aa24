"""
Unit tests for the expired-lease sweeper.
"""

import asyncio

from jobqueue.config import Settings
from jobqueue.constants import JobStatus
from jobqueue.lease import LeaseManager
from jobqueue.producer import Producer
from jobqueue.reaper import Reaper

TEST_QUEUE = "default"


async def crash_leases(producer: Producer, lease_manager: LeaseManager, count: int) -> list:
    job_ids = [await producer.enqueue(TEST_QUEUE, "echo", {"n": n}) for n in range(count)]
    for _ in job_ids:
        await lease_manager.acquire(TEST_QUEUE, "crashed-worker", lease_duration=0.01)
    await asyncio.sleep(0.1)
    return job_ids


class TestReaper:
    async def test_run_once_clears_backlog_across_batches(
        self,
        producer: Producer,
        lease_manager: LeaseManager,
        test_settings: Settings,
        load_job,
    ):
        job_ids = await crash_leases(producer, lease_manager, 5)
        reaper = Reaper(
            lease_manager,
            settings=test_settings.model_copy(update={"reaper_batch_size": 2}),
        )

        reclaimed = await reaper.run_once()

        assert reclaimed == 5
        assert reaper.total_reclaimed == 5
        for job_id in job_ids:
            assert (await load_job(job_id)).status == JobStatus.PENDING

    async def test_run_once_with_nothing_expired(
        self, producer: Producer, lease_manager: LeaseManager, test_settings: Settings
    ):
        await producer.enqueue(TEST_QUEUE, "echo", {"n": 1})
        await lease_manager.acquire(TEST_QUEUE, "live-worker")

        reaper = Reaper(lease_manager, settings=test_settings)

        assert await reaper.run_once() == 0
        assert reaper.total_reclaimed == 0

    async def test_stop_interrupts_the_interval_wait(
        self, lease_manager: LeaseManager, test_settings: Settings
    ):
        reaper = Reaper(lease_manager, interval_seconds=60, settings=test_settings)
        task = asyncio.create_task(reaper.start())
        await asyncio.sleep(0.1)
        assert reaper.running

        await reaper.stop()
        await asyncio.wait_for(task, timeout=2)

        assert not reaper.running
