"""Postgres-backed sliding-window counter store."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from asyncpg import Pool  # type: ignore[import-untyped]

from delivery_service.repositories.base import BaseRepository, affected_rows


class PostgresRateLimitStore(BaseRepository):
    """Counter rows in ``rate_limit_hits``; safe across service instances.

    The per-key advisory lock serializes check-and-record so two concurrent
    callers can never both take the last slot of a window.
    """

    def __init__(self, pool: Pool):
        super().__init__(pool)

    async def hit_if_below(self, key: str, limit: int, window_seconds: float) -> bool:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)
                count = await conn.fetchval(
                    """
                    SELECT COUNT(*)
                    FROM rate_limit_hits
                    WHERE key = $1
                      AND created_at > now() - make_interval(secs => $2)
                    """,
                    key,
                    float(window_seconds),
                )
                if int(count) >= limit:
                    return False
                await conn.execute("INSERT INTO rate_limit_hits (key) VALUES ($1)", key)
                return True

    async def purge(self, older_than_seconds: float) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        result = await self._execute("DELETE FROM rate_limit_hits WHERE created_at < $1", cutoff)
        return affected_rows(result)
