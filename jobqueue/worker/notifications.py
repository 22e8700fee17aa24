"""
Notification fan-out handler.

Delivers one notification event to its recipients: an inbox row per
recipient through the result sink, then an optional push through the
gateway.
"""

import logging
from typing import Any

import httpx

from jobqueue.config import Settings
from jobqueue.constants import (
    JOB_TYPE_NOTIFICATION_FANOUT,
    TABLE_NOTIFICATION_INBOX,
    ErrorKind,
)
from jobqueue.errors import TransientInfraError
from jobqueue.types.job import JobContext, JobOutcome
from jobqueue.types.payloads import NotificationFanoutPayload
from jobqueue.worker.handlers import register_handler

logger = logging.getLogger(__name__)


class PushGateway:
    """
    Client for the push delivery gateway, built per job.

    Disabled when no URL is configured. Connection errors and 5xx responses
    raise TransientInfraError; other responses are returned to the caller.
    """

    def __init__(self, url: str | None, client: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PushGateway":
        return cls(
            settings.notification_push_gateway_url,
            timeout=settings.notification_http_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def send(self, batch: dict[str, Any]) -> httpx.Response:
        try:
            response = await self._client.post(self.url, json=batch)
        except httpx.TransportError as e:
            raise TransientInfraError(f"Push gateway unreachable: {e}") from e

        if response.is_server_error:
            raise TransientInfraError(f"Push gateway returned HTTP {response.status_code}")
        return response

    async def aclose(self) -> None:
        await self._client.aclose()


def inbox_key(recipient_id: str, event_id: str) -> str:
    """Inbox rows are keyed per recipient and event, so redelivery overwrites."""
    return f"{recipient_id}:{event_id}"


@register_handler(
    JOB_TYPE_NOTIFICATION_FANOUT,
    payload_model=NotificationFanoutPayload,
    resources=("push_gateway",),
)
async def fanout_notification(context: JobContext) -> JobOutcome:
    """Write inbox rows for every recipient and push the batch."""
    payload: NotificationFanoutPayload = context.payload
    gateway: PushGateway = context.resource("push_gateway")

    for recipient_id in payload.recipient_ids:
        await context.sink.write(
            TABLE_NOTIFICATION_INBOX,
            inbox_key(recipient_id, payload.event_id),
            {
                "recipient_id": recipient_id,
                "event_id": payload.event_id,
                "template": payload.template,
                "context": payload.context,
            },
        )

    result: dict[str, Any] = {
        "event_id": payload.event_id,
        "delivered": len(payload.recipient_ids),
        "pushed": False,
    }

    if gateway.enabled:
        response = await gateway.send(
            {
                "event_id": payload.event_id,
                "template": payload.template,
                "recipient_ids": payload.recipient_ids,
                "context": payload.context,
            }
        )
        if response.is_client_error:
            return JobOutcome.permanent(
                ErrorKind.HANDLER_ERROR,
                f"Push gateway rejected batch: HTTP {response.status_code}",
                {"body": response.text[:1000]},
            )
        result["pushed"] = True

    logger.info(
        "Notification fanned out",
        extra={
            "job_id": str(context.job_id),
            "event_id": payload.event_id,
            "recipients": len(payload.recipient_ids),
            "pushed": result["pushed"],
        },
    )
    return JobOutcome.succeeded(result)
