"""
Type definitions for the job system.
Contains input/output type definitions grouped by module.
"""

from jobqueue.types.api import (
    AuditEntryResponse,
    DeadLetterListResponse,
    DeadLetterResponse,
    EnqueueRequest,
    EnqueueResponse,
    ErrorResponse,
    HealthResponse,
    JobResponse,
    RequeueRequest,
    RequeueResponse,
)
from jobqueue.types.events import TransitionEvent
from jobqueue.types.job import (
    JobContext,
    JobError,
    JobOutcome,
    LeaseInfo,
)
from jobqueue.types.payloads import (
    MediaProcessPayload,
    NotificationFanoutPayload,
    RenditionKind,
    RenditionSpec,
)

__all__ = [
    # API types
    "EnqueueRequest",
    "EnqueueResponse",
    "JobResponse",
    "AuditEntryResponse",
    "DeadLetterResponse",
    "DeadLetterListResponse",
    "RequeueRequest",
    "RequeueResponse",
    "HealthResponse",
    "ErrorResponse",
    # Job types
    "JobContext",
    "JobError",
    "JobOutcome",
    "LeaseInfo",
    # Payloads
    "MediaProcessPayload",
    "NotificationFanoutPayload",
    "RenditionKind",
    "RenditionSpec",
    # Event types
    "TransitionEvent",
]
