"""
Unit tests for the handler registry and job execution.
"""

import asyncio
from typing import Any
from uuid import uuid4

import pytest
from pydantic import BaseModel

from jobqueue.clock import utcnow
from jobqueue.config import Settings
from jobqueue.constants import ErrorKind, OutcomeKind
from jobqueue.errors import TransientInfraError
from jobqueue.types.job import JobContext, JobOutcome
from jobqueue.worker.handlers import HandlerRegistry, execute_job


class RecordingSink:
    """In-memory result sink."""

    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], dict[str, Any]] = {}

    async def write(self, table: str, key: str, fields: dict[str, Any]) -> None:
        self.rows.setdefault((table, key), {}).update(fields)


class Resize(BaseModel):
    width: int


class FakeClient:
    def __init__(self) -> None:
        self.closed = False

    async def aclose(self) -> None:
        self.closed = True


def make_context(job_type: str, payload: Any = None, attempt: int = 1) -> JobContext:
    return JobContext(
        job_id=uuid4(),
        queue="default",
        job_type=job_type,
        attempt=attempt,
        max_attempts=3,
        payload=payload if payload is not None else {},
        lease_owner="test-worker",
        lease_expires_at=utcnow(),
        sink=RecordingSink(),
    )


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_register_and_lookup(self):
        handlers = HandlerRegistry()

        @handlers.register("thumbs.resize", payload_model=Resize, timeout_seconds=3)
        async def resize(context: JobContext) -> None:
            return None

        registration = handlers.require("thumbs.resize")
        assert registration.handler is resize
        assert registration.payload_model is Resize
        assert registration.timeout_seconds == 3
        assert "thumbs.resize" in handlers
        assert handlers.list_handlers() == ["thumbs.resize"]

    def test_get_unknown_returns_none(self):
        assert HandlerRegistry().get("missing") is None

    def test_builtin_handlers_registered(self):
        from jobqueue.worker import registry

        assert "media.process" in registry
        assert "notifications.fanout" in registry


class TestExecuteJob:
    """Tests for outcome mapping in execute_job."""

    @pytest.fixture
    def handlers(self) -> HandlerRegistry:
        handlers = HandlerRegistry()

        @handlers.register("echo")
        async def echo(context: JobContext) -> dict:
            return {"echo": context.payload}

        @handlers.register("resize", payload_model=Resize)
        async def resize(context: JobContext) -> dict:
            return {"width": context.payload.width}

        @handlers.register("explode")
        async def explode(context: JobContext) -> None:
            raise RuntimeError("boom")

        @handlers.register("flaky_network")
        async def flaky_network(context: JobContext) -> None:
            raise TransientInfraError("gateway unreachable")

        @handlers.register("explicit")
        async def explicit(context: JobContext) -> JobOutcome:
            return JobOutcome.permanent(ErrorKind.HANDLER_ERROR, "bad recipient")

        @handlers.register("with_client", resources=("client",))
        async def with_client(context: JobContext) -> dict:
            client = context.resource("client")
            return {"closed_during_run": client.closed}

        @handlers.register("needs_missing", resources=("nothing",))
        async def needs_missing(context: JobContext) -> None:
            return None

        return handlers

    async def test_dict_return_is_success(self, handlers: HandlerRegistry, test_settings: Settings):
        outcome = await execute_job(
            make_context("echo", {"msg": "hi"}), handlers=handlers, settings=test_settings
        )

        assert outcome.kind == OutcomeKind.SUCCESS
        assert outcome.result == {"echo": {"msg": "hi"}}

    async def test_payload_validated_into_model(
        self, handlers: HandlerRegistry, test_settings: Settings
    ):
        context = make_context("resize", {"width": 320})

        outcome = await execute_job(context, handlers=handlers, settings=test_settings)

        assert outcome.success
        assert outcome.result == {"width": 320}
        assert isinstance(context.payload, Resize)

    async def test_invalid_payload_is_permanent(
        self, handlers: HandlerRegistry, test_settings: Settings
    ):
        outcome = await execute_job(
            make_context("resize", {"width": "wide"}), handlers=handlers, settings=test_settings
        )

        assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
        assert outcome.error.kind == ErrorKind.VALIDATION
        assert outcome.error.details["errors"][0]["loc"] == ["width"]

    async def test_unknown_type_is_permanent(
        self, handlers: HandlerRegistry, test_settings: Settings
    ):
        outcome = await execute_job(
            make_context("nonexistent"), handlers=handlers, settings=test_settings
        )

        assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
        assert outcome.error.kind == ErrorKind.UNKNOWN_JOB_TYPE
        assert "No handler registered" in outcome.error.message

    async def test_exception_is_retryable(
        self, handlers: HandlerRegistry, test_settings: Settings
    ):
        outcome = await execute_job(
            make_context("explode"), handlers=handlers, settings=test_settings
        )

        assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE
        assert outcome.error.kind == ErrorKind.HANDLER_ERROR
        assert outcome.error.message == "Handler exception: RuntimeError: boom"

    async def test_transient_infra_is_retryable(
        self, handlers: HandlerRegistry, test_settings: Settings
    ):
        outcome = await execute_job(
            make_context("flaky_network"), handlers=handlers, settings=test_settings
        )

        assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE
        assert outcome.error.kind == ErrorKind.TRANSIENT_INFRA

    async def test_returned_outcome_passes_through(
        self, handlers: HandlerRegistry, test_settings: Settings
    ):
        outcome = await execute_job(
            make_context("explicit"), handlers=handlers, settings=test_settings
        )

        assert outcome.kind == OutcomeKind.PERMANENT_FAILURE
        assert outcome.error.message == "bad recipient"

    async def test_resources_closed_after_job(
        self, handlers: HandlerRegistry, test_settings: Settings
    ):
        built: list[FakeClient] = []

        def client_factory(settings: Settings) -> FakeClient:
            client = FakeClient()
            built.append(client)
            return client

        outcome = await execute_job(
            make_context("with_client"),
            handlers=handlers,
            resource_factories={"client": client_factory},
            settings=test_settings,
        )

        assert outcome.result == {"closed_during_run": False}
        assert len(built) == 1
        assert built[0].closed is True

    async def test_async_resource_factory(
        self, handlers: HandlerRegistry, test_settings: Settings
    ):
        async def client_factory(settings: Settings) -> FakeClient:
            await asyncio.sleep(0)
            return FakeClient()

        outcome = await execute_job(
            make_context("with_client"),
            handlers=handlers,
            resource_factories={"client": client_factory},
            settings=test_settings,
        )

        assert outcome.success

    async def test_missing_resource_factory_is_retryable(
        self, handlers: HandlerRegistry, test_settings: Settings
    ):
        outcome = await execute_job(
            make_context("needs_missing"), handlers=handlers, settings=test_settings
        )

        assert outcome.kind == OutcomeKind.RETRYABLE_FAILURE
        assert "LookupError" in outcome.error.message


class TestJobContext:
    """Tests for JobContext."""

    def test_is_last_attempt(self):
        assert make_context("echo", attempt=3).is_last_attempt is True
        assert make_context("echo", attempt=2).is_last_attempt is False

    def test_remaining_attempts(self):
        assert make_context("echo", attempt=1).remaining_attempts == 2

    def test_missing_resource_raises(self):
        with pytest.raises(LookupError):
            make_context("echo").resource("media")

    async def test_renew_without_lease_raises(self):
        with pytest.raises(RuntimeError):
            await make_context("echo").renew()
