"""
Result sink.

Handlers write their domain results (asset states, inbox rows) through a
sink instead of reaching into other services' tables.
"""

import logging
from typing import Any, Protocol

from sqlalchemy import and_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.clock import utcnow
from jobqueue.db.models import JobResultRow

logger = logging.getLogger(__name__)


class ResultSink(Protocol):
    """Destination for handler results, keyed by (table, key)."""

    async def write(self, table: str, key: str, fields: dict[str, Any]) -> None:
        ...


class SqlResultSink:
    """
    Default sink backed by the job_results table.

    Writes are merged upserts: fields from later writes overwrite earlier
    ones, untouched fields are kept.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def write(self, table: str, key: str, fields: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                dialect = session.get_bind().dialect.name

                stmt = select(JobResultRow.fields).where(
                    and_(JobResultRow.table_name == table, JobResultRow.key == key)
                )
                if dialect == "postgresql":
                    stmt = stmt.with_for_update()
                existing = (await session.execute(stmt)).scalar_one_or_none() or {}

                merged = {**existing, **fields}
                now = utcnow()
                insert = pg_insert if dialect == "postgresql" else sqlite_insert
                upsert = insert(JobResultRow).values(
                    table_name=table, key=key, fields=merged, updated_at=now
                )
                upsert = upsert.on_conflict_do_update(
                    index_elements=[JobResultRow.table_name, JobResultRow.key],
                    set_={"fields": merged, "updated_at": now},
                )
                await session.execute(upsert)

        logger.debug("Wrote result row", extra={"table": table, "key": key})

    async def read(self, table: str, key: str) -> dict[str, Any] | None:
        """Current fields of a row, or None if never written."""
        async with self._session_factory() as session:
            stmt = select(JobResultRow.fields).where(
                and_(JobResultRow.table_name == table, JobResultRow.key == key)
            )
            return (await session.execute(stmt)).scalar_one_or_none()
