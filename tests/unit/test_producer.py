"""
Unit tests for the producer API.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import utcnow
from jobqueue.config import QueueSettings, Settings
from jobqueue.constants import JobStatus
from jobqueue.db.repository import JobStore
from jobqueue.errors import PayloadValidationError, ResourceExhaustedError
from jobqueue.lease import LeaseManager
from jobqueue.observability.events import EventBus
from jobqueue.producer import (
    EnqueueOptions,
    Producer,
    enqueue_media_processing,
    enqueue_notification_fanout,
)
from jobqueue.sink import SqlResultSink
from jobqueue.types.job import JobOutcome

TEST_QUEUE = "default"

MEDIA_PAYLOAD = {
    "asset_key": "assets/7",
    "source_path": "/uploads/7.mov",
    "renditions": [{"name": "720p", "width": 1280}, {"name": "480p", "width": 854}],
}


async def count_jobs(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        _, total = await JobStore(session).list_jobs()
    return total


class TestEnqueue:
    """Tests for Producer.enqueue."""

    async def test_enqueue_creates_pending_job(self, producer: Producer, load_job):
        job_id = await producer.enqueue(TEST_QUEUE, "echo", {"message": "hi"})

        job = await load_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.queue == TEST_QUEUE
        assert job.payload == {"message": "hi"}
        assert job.max_attempts == 5

    async def test_duplicate_returns_same_id(
        self,
        producer: Producer,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        options = EnqueueOptions(fingerprint="asset-7")

        first = await producer.enqueue(TEST_QUEUE, "echo", {"n": 1}, options)
        second = await producer.enqueue(TEST_QUEUE, "echo", {"n": 2}, options)

        assert first == second
        assert await count_jobs(session_factory) == 1

    async def test_submit_reports_created(self, producer: Producer):
        options = EnqueueOptions(fingerprint="asset-8")

        _, created = await producer.submit(TEST_QUEUE, "echo", {}, options)
        _, created_again = await producer.submit(TEST_QUEUE, "echo", {}, options)

        assert created is True
        assert created_again is False

    async def test_duplicate_while_leased(
        self, producer: Producer, lease_manager: LeaseManager
    ):
        options = EnqueueOptions(fingerprint="asset-9")
        first = await producer.enqueue(TEST_QUEUE, "echo", {}, options)
        await lease_manager.acquire(TEST_QUEUE, "worker-1")

        assert await producer.enqueue(TEST_QUEUE, "echo", {}, options) == first

    async def test_new_job_after_completion(
        self, producer: Producer, lease_manager: LeaseManager
    ):
        options = EnqueueOptions(fingerprint="asset-10")
        first = await producer.enqueue(TEST_QUEUE, "echo", {}, options)
        await lease_manager.acquire(TEST_QUEUE, "worker-1")
        await lease_manager.release(first, "worker-1", JobOutcome.succeeded())

        assert await producer.enqueue(TEST_QUEUE, "echo", {}, options) != first

    async def test_dedupe_disabled(
        self,
        producer: Producer,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        options = EnqueueOptions(fingerprint="asset-11", dedupe=False)

        first = await producer.enqueue(TEST_QUEUE, "echo", {}, options)
        second = await producer.enqueue(TEST_QUEUE, "echo", {}, options)

        assert first != second
        assert await count_jobs(session_factory) == 2

    async def test_bytes_payload(self, producer: Producer, load_job):
        job_id = await producer.enqueue(TEST_QUEUE, "echo", b'{"message": "raw"}')

        assert (await load_job(job_id)).payload == {"message": "raw"}

    async def test_non_object_payload_rejected(
        self,
        producer: Producer,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        with pytest.raises(PayloadValidationError):
            await producer.enqueue(TEST_QUEUE, "echo", "[1, 2, 3]")

        assert await count_jobs(session_factory) == 0

    async def test_not_before_with_timezone(self, producer: Producer, load_job):
        not_before = datetime.now(timezone(timedelta(hours=5, minutes=30))) + timedelta(hours=1)

        job_id = await producer.enqueue(
            TEST_QUEUE, "echo", {}, EnqueueOptions(not_before=not_before)
        )

        job = await load_job(job_id)
        expected = not_before.astimezone(UTC).replace(tzinfo=None)
        assert job.available_at == expected
        assert job.available_at > utcnow()

    async def test_per_call_max_attempts(self, producer: Producer, load_job):
        job_id = await producer.enqueue(
            TEST_QUEUE, "echo", {}, EnqueueOptions(max_attempts=2)
        )

        assert (await load_job(job_id)).max_attempts == 2


class TestBackpressure:
    """Tests for per-queue max_pending."""

    @pytest.fixture
    def bounded_producer(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
        event_bus: EventBus,
    ) -> Producer:
        settings = test_settings.model_copy(
            update={"queues": {TEST_QUEUE: QueueSettings(max_pending=2)}}
        )
        return Producer(session_factory, settings=settings, events=event_bus)

    async def test_saturated_queue_rejects(self, bounded_producer: Producer):
        await bounded_producer.enqueue(TEST_QUEUE, "echo", {"n": 1})
        await bounded_producer.enqueue(TEST_QUEUE, "echo", {"n": 2})

        with pytest.raises(ResourceExhaustedError) as exc_info:
            await bounded_producer.enqueue(TEST_QUEUE, "echo", {"n": 3})

        assert exc_info.value.depth == 2
        assert exc_info.value.limit == 2

    async def test_duplicate_allowed_when_saturated(self, bounded_producer: Producer):
        options = EnqueueOptions(fingerprint="asset-12")
        first = await bounded_producer.enqueue(TEST_QUEUE, "echo", {}, options)
        await bounded_producer.enqueue(TEST_QUEUE, "echo", {"n": 2})

        assert await bounded_producer.enqueue(TEST_QUEUE, "echo", {}, options) == first

    async def test_leased_jobs_do_not_count(
        self,
        bounded_producer: Producer,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
    ):
        lease_manager = LeaseManager(session_factory, settings=test_settings)
        await bounded_producer.enqueue(TEST_QUEUE, "echo", {"n": 1})
        await bounded_producer.enqueue(TEST_QUEUE, "echo", {"n": 2})
        await lease_manager.acquire(TEST_QUEUE, "worker-1")

        await bounded_producer.enqueue(TEST_QUEUE, "echo", {"n": 3})


class TestTypedEnqueue:
    """Tests for the media and notification enqueue helpers."""

    async def test_media_processing_marks_asset_queued(
        self, producer: Producer, result_sink: SqlResultSink, load_job
    ):
        job_id = await enqueue_media_processing(producer, result_sink, MEDIA_PAYLOAD)

        job = await load_job(job_id)
        assert job.queue == "media"
        assert job.job_type == "media.process"
        assert job.fingerprint is not None
        assert await result_sink.read("media_assets", "assets/7") == {
            "state": "queued",
            "job_id": str(job_id),
        }

    async def test_media_processing_deduplicates(
        self, producer: Producer, result_sink: SqlResultSink
    ):
        first = await enqueue_media_processing(producer, result_sink, MEDIA_PAYLOAD)
        reordered = {**MEDIA_PAYLOAD, "renditions": list(reversed(MEDIA_PAYLOAD["renditions"]))}

        assert await enqueue_media_processing(producer, result_sink, reordered) == first

    async def test_media_processing_rejects_bad_payload(
        self, producer: Producer, result_sink: SqlResultSink
    ):
        with pytest.raises(PayloadValidationError):
            await enqueue_media_processing(
                producer, result_sink, {**MEDIA_PAYLOAD, "renditions": []}
            )

    async def test_notification_fanout(self, producer: Producer, load_job):
        payload = {"event_id": "evt-1", "template": "new_follower", "recipient_ids": ["u1", "u2"]}

        first = await enqueue_notification_fanout(producer, payload)
        second = await enqueue_notification_fanout(producer, payload)

        assert first == second
        assert (await load_job(first)).queue == "notifications"
