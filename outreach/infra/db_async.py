# outreach/infra/db_async.py
"""
Async database connection pool (asyncpg).

The dispatch engine only needs single-statement conditional writes, so
connections run in autocommit mode unless a caller asks for a transaction.
"""
from __future__ import annotations
import json
from typing import Any, AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from outreach.config import settings
from outreach.infra.logging_config import get_logger

logger = get_logger(__name__)

# Global connection pool
_pool: asyncpg.Pool | None = None


async def init_pool() -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    logger.info("Initializing asyncpg connection pool")

    _pool = await asyncpg.create_pool(
        dsn=settings.database_dsn,
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=settings.pg_command_timeout,
        server_settings={
            "application_name": f"outreach_dispatch:{settings.processor_id}",
        },
    )

    logger.info(f"Connection pool created: min={settings.pg_pool_min}, max={settings.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    logger.info("Closing connection pool")
    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Get a database connection from the pool.

    Usage:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM runs WHERE id = $1", run_id)

    Args:
        autocommit: If False, the block runs inside a transaction that is
            committed on success and rolled back on error.
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()

    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await _pool.release(conn)


def get_pool() -> asyncpg.Pool:
    """Get the connection pool directly (health checks)"""
    if _pool is None:
        raise RuntimeError("Connection pool not initialized")
    return _pool


def load_json(value: Any, default: Any = None) -> Any:
    """jsonb columns arrive as text unless a codec is registered"""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value
