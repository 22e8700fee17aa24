"""
Worker module.
Contains the worker pool, the handler registry and the built-in handlers.
"""

from jobqueue.worker.handlers import (
    HandlerRegistry,
    execute_job,
    register_handler,
    registry,
)
from jobqueue.worker.main import WorkerPool, run

__all__ = [
    "HandlerRegistry",
    "WorkerPool",
    "execute_job",
    "register_handler",
    "registry",
    "run",
]
