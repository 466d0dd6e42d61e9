"""asyncpg connection pool for the local exercise datastore.

The pool is created once at app startup (see ``src.main.lifespan``) and shared
by the exercise store and the sync audit log.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("exercise_sync.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=30,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)",
        s.db_pool_min_size,
        s.db_pool_max_size,
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized, call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    pool: asyncpg.Pool | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection inside a transaction.

    Usage::

        async with get_connection() as conn:
            rows = await conn.fetch("SELECT * FROM exercises WHERE trainerize_id = $1", tid)
    """
    async with (pool or get_pool()).acquire() as conn:
        async with conn.transaction():
            yield conn


async def fetchval(query: str, *args: Any, pool: asyncpg.Pool | None = None) -> Any:
    async with get_connection(pool) as conn:
        return await conn.fetchval(query, *args)


async def ping(pool: asyncpg.Pool | None = None) -> bool:
    """Liveness check used by the health endpoint."""
    return await fetchval("SELECT 1", pool=pool) == 1
