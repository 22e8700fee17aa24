"""
OpenTelemetry tracing.

Spans are opened around enqueue, lease acquisition, release, sweeps and
handler execution. Until setup_tracing() installs an SDK provider they go
to the no-op provider of opentelemetry-api.
"""

import logging

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Tracer
from sqlalchemy.ext.asyncio import AsyncEngine

from jobqueue import __version__
from jobqueue.config import Settings, get_settings

logger = logging.getLogger(__name__)

TRACER_NAME = "jobqueue"

_provider: TracerProvider | None = None


def setup_tracing(
    settings: Settings | None = None,
    component: str = "jobqueue",
    engine: AsyncEngine | None = None,
    console: bool = False,
) -> bool:
    """
    Install the SDK tracer provider for this process.

    Args:
        settings: otel_enabled, the OTLP endpoint and the service name.
        component: Process role, exported as ``service.instance.role``.
        engine: Also instrument this engine's statements.
        console: Export spans to stdout as well (debugging).

    Returns:
        True if a provider is installed, False if spans stay no-ops.
    """
    global _provider

    settings = settings or get_settings()
    if _provider is not None:
        return True
    if not (settings.otel_enabled or console):
        return False

    _provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
                "service.instance.role": component,
            }
        )
    )
    if settings.otel_enabled:
        _provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
            )
        )
    if console:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(_provider)

    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    logger.info(
        "Tracing configured",
        extra={"component": component, "endpoint": settings.otel_exporter_otlp_endpoint},
    )
    return True


def shutdown_tracing() -> None:
    """Flush pending spans before the process exits."""
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def instrument_fastapi(app: FastAPI) -> None:
    FastAPIInstrumentor.instrument_app(app)


def get_tracer() -> Tracer:
    """Tracer bound to whichever provider is installed."""
    return trace.get_tracer(TRACER_NAME, __version__)
