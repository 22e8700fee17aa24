"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging

from sqlalchemy import event, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobqueue.config import get_settings
from jobqueue.db.models import Base, Job
from jobqueue.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _serialize_sqlite_transactions(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    Conditional transitions read then write; with deferred transactions two
    connections can deadlock on the lock upgrade instead of waiting.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, *, test: bool = False) -> AsyncEngine:
    """
    Create an async engine for a database URL.

    Args:
        database_url: SQLAlchemy URL (postgresql+asyncpg or sqlite+aiosqlite).
        test: Use NullPool so each session gets a fresh connection.

    Returns:
        AsyncEngine: The configured engine.
    """
    settings = get_settings()
    is_sqlite = database_url.startswith("sqlite")

    kwargs: dict = {"echo": settings.log_level == "DEBUG"}
    if is_sqlite:
        kwargs["connect_args"] = {"timeout": 30}
        kwargs["echo"] = False
    elif test:
        kwargs["poolclass"] = NullPool
    else:
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow
        kwargs["pool_pre_ping"] = True

    engine = create_async_engine(database_url, **kwargs)
    if is_sqlite:
        _serialize_sqlite_transactions(engine)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by every component that talks to the store."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_url)
    return _engine


async def init_db() -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and session factory.
    Should be called on process startup.
    """
    global AsyncSessionLocal
    AsyncSessionLocal = build_session_factory(get_engine())
    logger.info("Database connection initialized")
    return AsyncSessionLocal


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get the process session factory.

    Raises:
        RuntimeError: If the database is not initialized.
    """
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal


async def create_schema(engine: AsyncEngine | None = None) -> None:
    """Create all tables. Development and tests; production uses alembic."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def verify_store(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """
    Check that the store is reachable and its schema is in place.

    Raises:
        StoreUnavailableError: If the store cannot serve job queries.
    """
    try:
        async with session_factory() as session:
            await session.execute(select(Job.id).limit(1))
    except (SQLAlchemyError, OSError) as e:
        raise StoreUnavailableError(f"Job store is unavailable: {e}") from e
