"""
Request dependencies.

Everything routes need lives on ``app.state``; create_app() wires it.
"""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.config import Settings
from jobqueue.lease import LeaseManager
from jobqueue.producer import Producer


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return factory


async def get_async_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """
    Dependency for getting async database sessions.

    Yields:
        AsyncSession: An async database session.
    """
    async with get_session_factory(request)() as session:
        yield session


def get_producer(request: Request) -> Producer:
    return request.app.state.producer


def get_lease_manager(request: Request) -> LeaseManager:
    return request.app.state.lease_manager


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings
