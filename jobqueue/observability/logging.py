"""
Structured logging.

Modules log through stdlib ``logging.getLogger(__name__)`` with ``extra=``
fields; structlog renders those records as JSON (or console lines in
development) together with the bound job context and the active trace ids.
"""

import logging
import sys
from collections.abc import Callable
from typing import Any

import structlog
from opentelemetry import trace

from jobqueue.config import Settings, get_settings

# Libraries that are chatty at INFO
_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "aiosqlite")

Processor = Callable[[Any, str, dict[str, Any]], dict[str, Any]]


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach trace_id and span_id when a span is active."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def component_stamper(service: str, component: str) -> Processor:
    """Stamp every record with the service name and the process role."""

    def stamp(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service)
        event_dict.setdefault("component", component)
        return event_dict

    return stamp


def setup_logging(settings: Settings | None = None, component: str = "jobqueue") -> None:
    """
    Route all logging of this process through structlog.

    Args:
        settings: Log level, format and service name.
        component: Process role recorded on every line (api, worker, reaper).
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        component_stamper(settings.otel_service_name, component),
        add_trace_context,
    ]

    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer(default=str)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_worker(worker_id: str) -> None:
    """Bind the lease owner identity for the lifetime of a worker process."""
    structlog.contextvars.bind_contextvars(worker_id=worker_id)


def bind_job_context(job_id: str, queue: str, job_type: str, attempt: int) -> None:
    """Bind the running job to every log line emitted by its handler."""
    structlog.contextvars.bind_contextvars(
        job_id=job_id,
        queue=queue,
        job_type=job_type,
        attempt=attempt,
    )


def clear_job_context() -> None:
    """Drop the job fields bound by bind_job_context()."""
    structlog.contextvars.unbind_contextvars("job_id", "queue", "job_type", "attempt")
