"""Database connection pool factory and health check."""

import asyncio
import json
import logging
from typing import Optional

import asyncpg

from donate.config import get_config

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5.0

_pool: Optional[asyncpg.Pool] = None


async def _init_connection(conn: asyncpg.Connection) -> None:
    """Decode json/jsonb columns to Python objects on every pooled connection."""
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


async def get_pool() -> asyncpg.Pool:
    """
    Get or create the database connection pool.

    On first call, initializes the pool and runs a health check.
    Subsequent calls return the existing pool.

    Returns:
        asyncpg.Pool: Initialized database connection pool

    Raises:
        RuntimeError: If the health check fails
        asyncio.TimeoutError: If connection attempt exceeds the connect timeout
    """
    global _pool

    if _pool is not None:
        return _pool

    config = get_config()

    try:
        _pool = await asyncio.wait_for(
            asyncpg.create_pool(
                str(config.db_dsn),
                min_size=config.db_pool_min,
                max_size=config.db_pool_max,
                init=_init_connection,
            ),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            f"Database connection timed out after {CONNECT_TIMEOUT_SECONDS:.0f} seconds. "
            "Ensure PostgreSQL is running and accessible."
        )

    if _pool is None:
        raise RuntimeError("Failed to create database pool")

    try:
        async with _pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1")
            if result != 1:
                raise RuntimeError(f"Health check failed: expected 1, got {result}")
    except Exception as e:
        await _pool.close()
        _pool = None
        raise RuntimeError(f"Database health check failed: {e}") from e

    logger.info(
        f"Database pool ready (min={config.db_pool_min}, max={config.db_pool_max})"
    )
    return _pool


async def close_pool() -> None:
    """
    Close the database connection pool if it exists.

    Falls back to terminate() when a graceful close does not finish in time,
    which happens when a connection was never released.
    """
    global _pool
    if _pool is not None:
        try:
            await asyncio.wait_for(_pool.close(), timeout=CONNECT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(
                "Pool close timed out. Forcing termination (likely leaked connection)."
            )
            _pool.terminate()
        finally:
            _pool = None
