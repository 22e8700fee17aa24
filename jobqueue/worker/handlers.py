"""
Job handlers registry and execution.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes or lease expiry.
"""

import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from jobqueue.config import Settings, get_settings
from jobqueue.constants import ErrorKind
from jobqueue.errors import (
    HandlerTimeoutError,
    PayloadValidationError,
    TransientInfraError,
    UnknownJobTypeError,
)
from jobqueue.types.job import JobContext, JobOutcome
from jobqueue.types.payloads import validate_payload

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobOutcome | dict[str, Any] | None]]

# Builds one per-job dependency; may return an awaitable
ResourceFactory = Callable[[Settings], Any]


@dataclass(frozen=True)
class HandlerRegistration:
    """A handler and what it needs to run."""

    job_type: str
    handler: JobHandler
    payload_model: type[BaseModel] | None = None
    timeout_seconds: float | None = None
    resources: tuple[str, ...] = ()


class HandlerRegistry:
    """Maps job types to handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerRegistration] = {}

    def register(
        self,
        job_type: str,
        *,
        payload_model: type[BaseModel] | None = None,
        timeout_seconds: float | None = None,
        resources: Iterable[str] = (),
    ) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            job_type: The job type this handler processes.
            payload_model: Model the payload is validated against before the
                handler runs; the handler then receives the model instance.
            timeout_seconds: Execution bound, overriding configuration.
            resources: Names of per-job dependencies the handler needs.

        Returns:
            Decorator function.

        Example:
            @registry.register("media.process", payload_model=MediaProcessPayload)
            async def process_media(context: JobContext) -> JobOutcome:
                ...
        """
        def decorator(handler: JobHandler) -> JobHandler:
            self._handlers[job_type] = HandlerRegistration(
                job_type=job_type,
                handler=handler,
                payload_model=payload_model,
                timeout_seconds=timeout_seconds,
                resources=tuple(resources),
            )
            logger.info(f"Registered handler for job type: {job_type}")
            return handler
        return decorator

    def get(self, job_type: str) -> HandlerRegistration | None:
        """Get the registration for a job type, or None."""
        return self._handlers.get(job_type)

    def require(self, job_type: str) -> HandlerRegistration:
        """
        Get the registration for a job type.

        Raises:
            UnknownJobTypeError: If no handler is registered.
        """
        registration = self._handlers.get(job_type)
        if registration is None:
            raise UnknownJobTypeError(job_type)
        return registration

    def list_handlers(self) -> list[str]:
        """List all registered job types."""
        return list(self._handlers.keys())

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers


# Process-wide registry the built-in handlers register into
registry = HandlerRegistry()


def register_handler(job_type: str, **kwargs: Any) -> Callable[[JobHandler], JobHandler]:
    """Register a handler in the default registry."""
    return registry.register(job_type, **kwargs)


async def _close(resource: Any) -> None:
    closer = getattr(resource, "aclose", None) or getattr(resource, "close", None)
    if closer is None:
        return
    result = closer()
    if inspect.isawaitable(result):
        await result


@asynccontextmanager
async def open_resources(
    names: Iterable[str],
    factories: Mapping[str, ResourceFactory],
    settings: Settings,
) -> AsyncIterator[dict[str, Any]]:
    """
    Build the named per-job dependencies and close them when the job ends.

    Raises:
        LookupError: If a name has no factory.
    """
    async with AsyncExitStack() as stack:
        resources: dict[str, Any] = {}
        for name in names:
            factory = factories.get(name)
            if factory is None:
                raise LookupError(f"No resource factory named {name!r}")
            resource = factory(settings)
            if inspect.isawaitable(resource):
                resource = await resource
            stack.push_async_callback(_close, resource)
            resources[name] = resource
        yield resources


def _as_outcome(returned: JobOutcome | dict[str, Any] | None) -> JobOutcome:
    if isinstance(returned, JobOutcome):
        return returned
    return JobOutcome.succeeded(returned)


async def execute_job(
    context: JobContext,
    *,
    handlers: HandlerRegistry | None = None,
    resource_factories: Mapping[str, ResourceFactory] | None = None,
    settings: Settings | None = None,
) -> JobOutcome:
    """
    Execute a job using the appropriate handler.

    The payload is validated before anything else runs. Handler exceptions
    are mapped to outcomes: validation errors and unknown types are
    permanent, everything else is retryable.

    Args:
        context: The job context.
        handlers: Registry to look the job type up in.
        resource_factories: Builders for the handler's per-job dependencies.
        settings: Passed to resource factories.

    Returns:
        JobOutcome from the handler.
    """
    handlers = handlers or registry
    settings = settings or get_settings()
    extra = {"job_id": str(context.job_id), "job_type": context.job_type}

    try:
        registration = handlers.require(context.job_type)
        if registration.payload_model is not None:
            context.payload = validate_payload(registration.payload_model, context.payload)

        async with open_resources(
            registration.resources, resource_factories or {}, settings
        ) as resources:
            context.resources = resources
            returned = await registration.handler(context)

    except PayloadValidationError as e:
        logger.warning(f"Invalid payload: {e}", extra=extra)
        return JobOutcome.permanent(
            ErrorKind.VALIDATION,
            str(e),
            {"errors": e.errors} if e.errors else None,
        )
    except UnknownJobTypeError as e:
        logger.error(str(e), extra=extra)
        return JobOutcome.permanent(ErrorKind.UNKNOWN_JOB_TYPE, str(e))
    except TransientInfraError as e:
        logger.warning(f"Transient failure: {e}", extra=extra)
        return JobOutcome.retryable(ErrorKind.TRANSIENT_INFRA, str(e))
    except HandlerTimeoutError as e:
        logger.warning(str(e), extra=extra)
        return JobOutcome.retryable(ErrorKind.HANDLER_TIMEOUT, str(e))
    except Exception as e:
        logger.exception("Handler raised exception", extra={**extra, "error": str(e)})
        return JobOutcome.retryable(
            ErrorKind.HANDLER_ERROR,
            f"Handler exception: {type(e).__name__}: {e}",
        )

    return _as_outcome(returned)
