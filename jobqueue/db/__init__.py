"""
Database module.
Contains database connection, models, the job store and the dead-letter store.
"""

from jobqueue.db.connection import (
    build_engine,
    build_session_factory,
    close_db,
    create_schema,
    get_engine,
    get_session_factory,
    init_db,
    verify_store,
)
from jobqueue.db.dead_letter import DeadLetterRepository
from jobqueue.db.models import Base, DeadLetter, Job, JobAuditEntry, JobResultRow
from jobqueue.db.repository import JobStore, store_scope

__all__ = [
    "build_engine",
    "build_session_factory",
    "get_session_factory",
    "get_engine",
    "init_db",
    "close_db",
    "create_schema",
    "verify_store",
    "Job",
    "JobAuditEntry",
    "DeadLetter",
    "JobResultRow",
    "Base",
    "JobStore",
    "DeadLetterRepository",
    "store_scope",
]
