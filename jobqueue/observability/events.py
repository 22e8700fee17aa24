"""
Transition event hook.

Every committed status transition is published to the subscribers of an
EventBus. The default bus logs each transition and counts it in Prometheus;
external collaborators (alerting, cache invalidation) subscribe alongside.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable

from jobqueue.constants import JobStatus
from jobqueue.observability.metrics import get_metrics
from jobqueue.types.events import TransitionEvent

logger = logging.getLogger(__name__)

EventSubscriber = Callable[[TransitionEvent], Awaitable[None] | None]


def log_transition(event: TransitionEvent) -> None:
    """Write one structured log line per transition."""
    if event.to_status == JobStatus.DEAD:
        logger.warning("Job dead-lettered", extra=event.log_fields())
    elif event.to_status == JobStatus.FAILED_RETRYABLE:
        logger.info("Job failed, retry scheduled", extra=event.log_fields())
    else:
        logger.info("Job transition", extra=event.log_fields())


def count_transition(event: TransitionEvent) -> None:
    """Count transitions, dead letters and reclaimed leases."""
    metrics = get_metrics()
    metrics.record_transition(event.queue, event.job_type, event.to_status.value)
    if event.to_status == JobStatus.DEAD:
        metrics.record_dead_lettered(event.queue, event.job_type)
    if event.from_status == JobStatus.LEASED and event.to_status == JobStatus.PENDING:
        metrics.record_lease_expired(event.queue)
    if event.to_status == JobStatus.LEASED:
        metrics.record_lease_acquired(event.queue)


class EventBus:
    """
    Fan-out of transition events to subscribers.

    Subscribers may be plain or async callables. A failing subscriber is
    logged and skipped; it never blocks the job lifecycle.
    """

    def __init__(self, subscribers: Iterable[EventSubscriber] | None = None):
        self._subscribers: list[EventSubscriber] = list(subscribers or [])

    def subscribe(self, subscriber: EventSubscriber) -> EventSubscriber:
        """Register a subscriber. Usable as a decorator."""
        self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: EventSubscriber) -> None:
        self._subscribers.remove(subscriber)

    async def publish(self, event: TransitionEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                outcome = subscriber(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "Transition subscriber failed",
                    extra={"subscriber": getattr(subscriber, "__name__", repr(subscriber)), **event.log_fields()},
                )

    async def publish_all(self, events: Iterable[TransitionEvent]) -> None:
        for event in events:
            await self.publish(event)


def create_event_bus(*extra: EventSubscriber) -> EventBus:
    """Event bus with the logging and metrics subscribers installed."""
    return EventBus([log_transition, count_transition, *extra])
