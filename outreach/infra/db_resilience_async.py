# outreach/infra/db_resilience_async.py
"""
Retry logic for transient asyncpg failures.

Only acquiring the connection is retried. Once a statement has been sent,
the caller owns the outcome: re-running a conditional claim after an
ambiguous failure could double-dispatch a row.
"""
from __future__ import annotations
import asyncio
from typing import Callable
from contextlib import asynccontextmanager, AsyncExitStack
from functools import wraps

import asyncpg
from outreach.infra.db_async import db_conn
from outreach.infra.logging_config import get_logger
from outreach.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: BaseException) -> bool:
    """
    Check if database error is transient (should retry).

    Transient errors:
    - Connection errors / server closed connection
    - Too many connections
    - Deadlock
    """
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.DeadlockDetectedError,
        ConnectionError,
        asyncio.TimeoutError,
    )):
        return True

    error_message = str(exc).lower()
    return any(pattern in error_message for pattern in _TRANSIENT_PATTERNS)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0
):
    """
    Decorator to retry an idempotent async read on transient database errors.

    Example:
        @retry_on_transient_error(max_retries=3)
        async def count_pending(run_id: str) -> int:
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not is_transient_error(exc) or attempt >= max_retries:
                        DispatchMetrics.database_error(func.__name__)
                        raise

                    logger.warning(
                        f"Transient error in {func.__name__} (attempt {attempt + 1}/{max_retries}): {exc}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, max_retries: int = 3):
    """
    Database connection with retry on transient errors while acquiring it.

    Usage:
        async with safe_db_conn() as conn:
            await conn.execute("UPDATE run_rows SET ...")
    """
    delay = 0.1

    async with AsyncExitStack() as stack:
        for attempt in range(max_retries + 1):
            try:
                conn = await stack.enter_async_context(db_conn(autocommit=autocommit))
                break
            except Exception as exc:
                if not is_transient_error(exc) or attempt >= max_retries:
                    DispatchMetrics.database_error("acquire")
                    if attempt >= max_retries:
                        logger.error(f"Max retries ({max_retries}) exceeded getting connection")
                    raise

                logger.warning(
                    f"Transient error getting connection (attempt {attempt + 1}/{max_retries}): {exc}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2.0, 5.0)

        yield conn
