"""PostgreSQL wiring for the decision service

Owns the asyncpg pool and the two repositories built on it. All decision
logic lives in decision/; nothing here knows about credits or rounds.
"""

import json
from pathlib import Path
from typing import Optional

import asyncpg

from config import config, get_logger
from database.repositories_async import DecisionRepository, HiveRepository
from exceptions import DatabaseConnectionError

logger = get_logger(__name__).bind(component="database_postgres")

SCHEMA_PATH = Path(__file__).parent / "schema_postgres.sql"


def _jsonb_encoder(obj) -> str:
    """json.dumps that also accepts pydantic models (camelCase, JSON mode)"""

    def default(o):
        if hasattr(o, "model_dump"):
            return o.model_dump(mode="json", by_alias=True)
        raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")

    return json.dumps(obj, default=default)


async def _register_jsonb_codec(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=_jsonb_encoder,
        decoder=json.loads,
        schema="pg_catalog",
    )


class Database:
    """Pool plus repositories

    Usage:
        db = await Database.create()
        round_ = await db.decisions.get_round(round_id)
        await db.close()
    """

    pool: asyncpg.Pool
    decisions: DecisionRepository
    hives: HiveRepository

    def __init__(self, pool: asyncpg.Pool):
        # Use Database.create(); the pool must already exist
        self.pool = pool
        self.decisions = DecisionRepository(pool)
        self.hives = HiveRepository(pool)

    @classmethod
    async def create(
        cls,
        dsn: Optional[str] = None,
        min_size: int = config.POSTGRES_POOL_MIN_SIZE,
        max_size: int = config.POSTGRES_POOL_MAX_SIZE,
    ) -> "Database":
        """Open the pool (JSONB codec on every connection).

        Raises:
            DatabaseConnectionError: Postgres unreachable or rejected the login
        """
        try:
            pool = await asyncpg.create_pool(
                dsn or config.get_postgres_dsn(),
                min_size=min_size,
                max_size=max_size,
                command_timeout=60,
                init=_register_jsonb_codec,
            )
        except (asyncpg.PostgresError, OSError, ConnectionError) as e:
            logger.error("failed to create connection pool", error=str(e))
            raise DatabaseConnectionError(f"Failed to connect to PostgreSQL: {e}") from e

        logger.info("connection pool created", min_size=min_size, max_size=max_size)
        return cls(pool)

    async def close(self) -> None:
        await self.pool.close()
        logger.info("connection pool closed")

    async def init_schema(self) -> None:
        """Apply schema_postgres.sql (idempotent, runs on every startup)"""
        if not SCHEMA_PATH.exists():
            raise FileNotFoundError(f"Schema file not found: {SCHEMA_PATH}")

        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_PATH.read_text())
        logger.info("decision schema initialized")
