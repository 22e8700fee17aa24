"""
Producer API.

The enqueue contract used by request handlers and by workers that schedule
follow-up work. Enqueue is durable: when it returns, the job is committed.
"""

import hashlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    JOB_TYPE_MEDIA_PROCESS,
    JOB_TYPE_NOTIFICATION_FANOUT,
    QUEUE_MEDIA,
    QUEUE_NOTIFICATIONS,
    SPAN_ENQUEUE_JOB,
    TABLE_MEDIA_ASSETS,
    MediaAssetState,
)
from jobqueue.db.models import Job
from jobqueue.db.repository import store_scope
from jobqueue.errors import PayloadValidationError, ResourceExhaustedError
from jobqueue.observability.events import EventBus
from jobqueue.observability.metrics import get_metrics
from jobqueue.observability.tracing import get_tracer
from jobqueue.sink import ResultSink
from jobqueue.types.payloads import (
    MediaProcessPayload,
    NotificationFanoutPayload,
    validate_payload,
)

logger = logging.getLogger(__name__)

RawPayload = Mapping[str, Any] | bytes | str


def compute_fingerprint(job_type: str, fields: Mapping[str, Any]) -> str:
    """
    Deterministic hash of a job type and its identifying payload fields.

    Key order does not matter; two payloads that differ only in fields left
    out of ``fields`` share a fingerprint.
    """
    canonical = json.dumps(
        {"type": job_type, "fields": fields},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_payload(payload: RawPayload) -> dict[str, Any]:
    """
    Normalize a payload to a JSON object.

    Raises:
        PayloadValidationError: If the payload is not a JSON object.
    """
    if isinstance(payload, (bytes, bytearray, str)):
        try:
            payload = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PayloadValidationError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(payload, Mapping):
        raise PayloadValidationError(
            f"Payload must be a JSON object, got {type(payload).__name__}"
        )

    body = dict(payload)
    try:
        json.dumps(body)
    except (TypeError, ValueError) as e:
        raise PayloadValidationError(f"Payload is not JSON-serializable: {e}") from e
    return body


def _to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class EnqueueOptions:
    """Per-call enqueue options."""

    fingerprint: str | None = None
    max_attempts: int | None = None
    # Earliest time the job may run
    not_before: datetime | None = None
    dedupe: bool = True


class Producer:
    """
    Enqueues jobs.

    Applies per-queue backpressure (``max_pending``) and fingerprint
    deduplication; a duplicate enqueue returns the existing job's id.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        settings: Settings | None = None,
        events: EventBus | None = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._events = events

    async def enqueue(
        self,
        queue: str,
        job_type: str,
        payload: RawPayload,
        options: EnqueueOptions | None = None,
    ) -> UUID:
        """
        Enqueue a job.

        Returns:
            The new job's id, or the id of the active duplicate.

        Raises:
            PayloadValidationError: If the payload is not a JSON object.
            ResourceExhaustedError: If the queue's backlog is full.
        """
        job, _ = await self.submit(queue, job_type, payload, options)
        return job.id

    async def submit(
        self,
        queue: str,
        job_type: str,
        payload: RawPayload,
        options: EnqueueOptions | None = None,
    ) -> tuple[Job, bool]:
        """
        Enqueue a job and report whether it was created.

        Returns:
            Tuple of (Job, created) where created is False for a duplicate.
        """
        options = options or EnqueueOptions()
        body = parse_payload(payload)
        max_attempts = options.max_attempts or self._settings.max_attempts_for(job_type)
        limit = self._settings.queue_settings(queue).max_pending

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("queue", queue)
            span.set_attribute("job_type", job_type)

            async with store_scope(self._session_factory, self._events) as store:
                if options.fingerprint is not None and options.dedupe:
                    existing = await store.find_active_by_fingerprint(options.fingerprint)
                    if existing is not None:
                        get_metrics().record_enqueued(queue, job_type, deduplicated=True)
                        span.set_attribute("job_id", str(existing.id))
                        return existing, False

                # Exact on SQLite, where the transaction holds the write lock.
                # On PostgreSQL concurrent producers may each pass the count,
                # so the bound is soft by up to the number of racing enqueues.
                if limit:
                    depth = await store.queue_depth(queue)
                    if depth >= limit:
                        logger.warning(
                            "Rejected enqueue, queue saturated",
                            extra={"queue": queue, "depth": depth, "limit": limit},
                        )
                        raise ResourceExhaustedError(queue, depth, limit)

                job, created = await store.insert(
                    queue,
                    job_type,
                    body,
                    max_attempts=max_attempts,
                    fingerprint=options.fingerprint,
                    dedupe=options.dedupe,
                    available_at=_to_naive_utc(options.not_before),
                )

            span.set_attribute("job_id", str(job.id))

        get_metrics().record_enqueued(queue, job_type, deduplicated=not created)
        return job, created


async def enqueue_media_processing(
    producer: Producer,
    sink: ResultSink,
    payload: MediaProcessPayload | Mapping[str, Any],
    *,
    max_attempts: int | None = None,
) -> UUID:
    """
    Enqueue rendition processing for an uploaded asset and mark it queued.

    A repeated request for the same asset and renditions returns the job
    already in flight without touching the asset state.
    """
    model = validate_payload(MediaProcessPayload, payload)
    fingerprint = compute_fingerprint(JOB_TYPE_MEDIA_PROCESS, model.fingerprint_fields())

    job, created = await producer.submit(
        QUEUE_MEDIA,
        JOB_TYPE_MEDIA_PROCESS,
        model.model_dump(mode="json"),
        EnqueueOptions(fingerprint=fingerprint, max_attempts=max_attempts),
    )
    if created:
        await sink.write(
            TABLE_MEDIA_ASSETS,
            model.asset_key,
            {"state": MediaAssetState.QUEUED.value, "job_id": str(job.id)},
        )
    return job.id


async def enqueue_notification_fanout(
    producer: Producer,
    payload: NotificationFanoutPayload | Mapping[str, Any],
) -> UUID:
    """Enqueue delivery of one notification event to its recipients."""
    model = validate_payload(NotificationFanoutPayload, payload)
    fingerprint = compute_fingerprint(JOB_TYPE_NOTIFICATION_FANOUT, model.fingerprint_fields())
    return await producer.enqueue(
        QUEUE_NOTIFICATIONS,
        JOB_TYPE_NOTIFICATION_FANOUT,
        model.model_dump(mode="json"),
        EnqueueOptions(fingerprint=fingerprint),
    )
