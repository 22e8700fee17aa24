"""
Logging, metrics, tracing and the transition event hook.
"""

from jobqueue.observability.events import EventBus, create_event_bus
from jobqueue.observability.logging import bind_job_context, clear_job_context, setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics, setup_metrics
from jobqueue.observability.tracing import get_tracer, setup_tracing, shutdown_tracing

__all__ = [
    "EventBus",
    "MetricsCollector",
    "bind_job_context",
    "clear_job_context",
    "create_event_bus",
    "get_metrics",
    "get_tracer",
    "setup_logging",
    "setup_metrics",
    "setup_tracing",
    "shutdown_tracing",
]
