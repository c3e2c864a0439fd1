"""Database connection and SQL execution for maintenance jobs."""

import asyncio
import logging
from typing import Any, Optional, Sequence

import aiosqlite

from housekeeping.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


class SqliteExecutor:
    """Runs maintenance SQL against one aiosqlite connection.

    ``execute`` is for statements whose result is not needed (ANALYZE,
    VACUUM); ``query`` returns all rows and commits whatever the statement
    changed, so ``DELETE ... RETURNING`` batches are durable on return.
    """

    dialect = "sqlite"

    def __init__(self, connection: aiosqlite.Connection):
        self.connection = connection

    async def execute(self, statement: str) -> None:
        cursor = await self.connection.execute(statement)
        await cursor.close()
        await self.connection.commit()

    async def query(self, statement: str) -> Sequence[Sequence[Any]]:
        cursor = await self.connection.execute(statement)
        rows = await cursor.fetchall()
        await cursor.close()
        if self.connection.in_transaction:
            await self.connection.commit()
        return rows


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            logger.info(f"Database connection opened: {settings.database_path}")
        return _db_connection


async def get_executor() -> SqliteExecutor:
    """Get an executor bound to the shared connection."""
    return SqliteExecutor(await get_database())


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")
