"""Asyncpg connection pool lifecycle."""
from __future__ import annotations

from typing import Any

import asyncpg  # type: ignore[import-untyped]

from delivery_service.settings import settings

pool: asyncpg.Pool | None = None


async def init_pool(_app: Any = None) -> None:
    global pool
    if pool is None:
        pool = await asyncpg.create_pool(
            dsn=str(settings.database_url),
            max_size=settings.db_pool_size,
        )


async def close_pool(_app: Any = None) -> None:
    global pool
    if pool is not None:
        await pool.close()
        pool = None


async def get_pool() -> asyncpg.Pool:
    """Return the initialized pool, creating it on first use."""
    if pool is None:
        await init_pool()
    assert pool is not None  # for type checkers
    return pool
