"""Shared plumbing for the asyncpg repositories

Every repository gets the pool handed to it and never opens its own
connections. Driver failures are translated once, here, so callers only
ever see the hivemind hierarchy:

    SerializationError / DeadlockDetectedError -> TransactionConflictError (retryable)
    lost or refused connections, timeouts      -> DatabaseConnectionError (retryable)
    constraint violations                      -> DataIntegrityError
    anything else from Postgres                -> DatabaseError

Lookups by id return None when the row is missing; list lookups return [].
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, List, Optional

import asyncpg

from config import get_logger
from exceptions import (
    DatabaseConnectionError,
    DatabaseError,
    DataIntegrityError,
    TransactionConflictError,
)

logger = get_logger(__name__).bind(component="repository")

# Failures that mean "the connection is gone", not "the query is wrong"
_CONNECTION_ERRORS = (
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.InterfaceError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,  # command_timeout
)


def translate_error(e: Exception, operation: str) -> Exception:
    """Map an asyncpg/driver failure onto the hivemind exception hierarchy"""
    if isinstance(e, (asyncpg.exceptions.SerializationError, asyncpg.exceptions.DeadlockDetectedError)):
        return TransactionConflictError(str(e), operation=operation)
    if isinstance(e, _CONNECTION_ERRORS):
        return DatabaseConnectionError(f"Database unavailable during {operation}: {e}")
    if isinstance(e, asyncpg.exceptions.IntegrityConstraintViolationError):
        return DataIntegrityError(
            str(e),
            table=getattr(e, "table_name", None),
            constraint=getattr(e, "constraint_name", None),
        )
    return DatabaseError(f"{operation} failed: {e}")


class BaseRepository:
    """Pool holder with translated fetch helpers and an explicit transaction()"""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _run(
        self, method: str, query: str, args: tuple, conn: Optional[asyncpg.Connection]
    ) -> Any:
        if conn is not None:
            # Caller's transaction translates failures on exit
            return await getattr(conn, method)(query, *args)
        try:
            async with self.pool.acquire() as pooled:
                return await getattr(pooled, method)(query, *args)
        except (asyncpg.PostgresError, *_CONNECTION_ERRORS) as e:
            raise translate_error(e, method) from e

    async def _fetchrow(
        self, query: str, *args: Any, conn: Optional[asyncpg.Connection] = None
    ) -> Optional[asyncpg.Record]:
        return await self._run("fetchrow", query, args, conn)

    async def _fetch(
        self, query: str, *args: Any, conn: Optional[asyncpg.Connection] = None
    ) -> List[asyncpg.Record]:
        return await self._run("fetch", query, args, conn)

    async def _fetchval(
        self, query: str, *args: Any, conn: Optional[asyncpg.Connection] = None
    ) -> Any:
        return await self._run("fetchval", query, args, conn)

    @asynccontextmanager
    async def transaction(self, operation: str = "transaction"):
        """One connection, one transaction; commit on clean exit.

            async with self.transaction("cast_vote") as conn:
                await conn.fetchrow("SELECT ... FOR SHARE", round_id)
                await conn.execute("INSERT ... ON CONFLICT ...")

        Raises:
            TransactionConflictError: serialization failure or deadlock
            DatabaseConnectionError: connection lost
            DataIntegrityError / DatabaseError: anything else from the driver
        """
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    yield conn
        except (asyncpg.PostgresError, *_CONNECTION_ERRORS) as e:
            translated = translate_error(e, operation)
            logger.warning(
                "transaction failed",
                operation=operation,
                error_type=type(e).__name__,
                retryable=translated.is_retryable,
            )
            raise translated from e

    @staticmethod
    def _parse_row_count(result: str) -> int:
        """'UPDATE 1' -> 1; empty status -> 0"""
        return int(result.rsplit(" ", 1)[-1]) if result else 0
