"""Shared asyncpg pool for the subscription store and the migration runner."""

import asyncio
import logging
from typing import Optional

import asyncpg

from billflow.config import AppConfig, get_config

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 5.0
CLOSE_TIMEOUT_SECONDS = 5.0
APPLICATION_NAME = "billflow"

_pool: Optional[asyncpg.Pool] = None


def pool_options(config: AppConfig) -> dict:
    """Keyword arguments for ``asyncpg.create_pool``.

    Every statement is bounded twice: client side by ``command_timeout`` and
    server side by ``statement_timeout``, both from ``store_timeout_seconds``.
    """
    timeout_ms = int(config.store_timeout_seconds * 1000)
    return {
        "min_size": config.db_pool_min,
        "max_size": config.db_pool_max,
        "command_timeout": config.store_timeout_seconds,
        "server_settings": {
            "application_name": APPLICATION_NAME,
            "statement_timeout": str(timeout_ms),
        },
    }


async def _check(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        result = await conn.fetchval("SELECT 1")
    if result != 1:
        raise RuntimeError(f"expected 1, got {result}")


async def get_pool() -> asyncpg.Pool:
    """
    Get or lazily create the store's connection pool.

    The first call connects and runs a ``SELECT 1`` health check; later
    calls return the same pool.

    Raises:
        RuntimeError: If the pool cannot be created or fails its health check
        asyncio.TimeoutError: If connecting takes longer than 5 seconds
    """
    global _pool

    if _pool is not None:
        return _pool

    config = get_config()
    try:
        pool = await asyncio.wait_for(
            asyncpg.create_pool(str(config.db_dsn), **pool_options(config)),
            timeout=CONNECT_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise asyncio.TimeoutError(
            f"Subscription store connection timed out after {CONNECT_TIMEOUT_SECONDS:g} seconds. "
            "Ensure PostgreSQL is running and accessible."
        )
    if pool is None:
        raise RuntimeError("Failed to create subscription store pool")

    try:
        await _check(pool)
    except Exception as e:
        await pool.close()
        raise RuntimeError(f"Database health check failed: {e}") from e

    _pool = pool
    logger.info(
        f"Subscription store pool ready: min={config.db_pool_min}, max={config.db_pool_max}, "
        f"statement_timeout={config.store_timeout_seconds}s"
    )
    return _pool


async def close_pool() -> None:
    """Close the pool, terminating it if a leaked connection stalls the close."""
    global _pool
    pool, _pool = _pool, None
    if pool is None:
        return
    try:
        await asyncio.wait_for(pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(
            f"Pool close timed out after {CLOSE_TIMEOUT_SECONDS:g} seconds; terminating"
        )
        pool.terminate()
