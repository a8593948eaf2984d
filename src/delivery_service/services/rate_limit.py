"""Sliding-window limits for submissions and per-endpoint deliveries."""
from __future__ import annotations

import asyncio
import time
from collections import defaultdict, deque
from typing import Any, Callable, Mapping, Protocol
from uuid import UUID

import structlog

from delivery_service.core.exceptions import RateLimitExceededError
from delivery_service.domain.webhooks import Endpoint

logger = structlog.get_logger(__name__)

SUBMISSION_ROUTE = "feedback"


class RateLimitStore(Protocol):
    async def hit_if_below(self, key: str, limit: int, window_seconds: float) -> bool:
        """Atomically count hits in the trailing window and record one if below ``limit``."""
        ...

    async def purge(self, older_than_seconds: float) -> int:
        ...


class MemoryRateLimitStore:
    """Per-process counter store for single-instance deployments."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def hit_if_below(self, key: str, limit: int, window_seconds: float) -> bool:
        async with self._lock:
            now = self._clock()
            hits = self._hits[key]
            cutoff = now - window_seconds
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= limit:
                return False
            hits.append(now)
            return True

    async def purge(self, older_than_seconds: float) -> int:
        async with self._lock:
            cutoff = self._clock() - older_than_seconds
            removed = 0
            for key in list(self._hits):
                hits = self._hits[key]
                while hits and hits[0] <= cutoff:
                    hits.popleft()
                    removed += 1
                if not hits:
                    del self._hits[key]
            return removed


class EndpointRateLimiter:
    """Caps deliveries per endpoint over a trailing window (default 60s)."""

    def __init__(self, store: RateLimitStore, *, window_seconds: float = 60.0):
        self._store = store
        self._window = window_seconds

    async def try_acquire(self, project_id: UUID, endpoint: Endpoint) -> bool:
        if not endpoint.rate_limited:
            return True
        key = f"endpoint:{project_id}:{endpoint.id}"
        return await self._store.hit_if_below(key, endpoint.rate_limit_per_min or 0, self._window)


class SubmissionGate:
    """Two-stage gate in front of feedback ingestion.

    The client stage runs before any project lookup so anonymous floods are
    rejected cheaply; the project stage applies the owner's own limits.
    """

    def __init__(self, store: RateLimitStore, *, limit: int = 5, window_seconds: float = 60.0):
        self._store = store
        self._limit = limit
        self._window = window_seconds

    async def check_client(self, client_ip: str, *, route: str = SUBMISSION_ROUTE) -> None:
        allowed = await self._store.hit_if_below(f"{route}:{client_ip}", self._limit, self._window)
        if not allowed:
            logger.info("submission rate limited", route=route, client_ip=client_ip)
            raise RateLimitExceededError("Rate limit exceeded")

    async def check_project(
        self,
        project_id: UUID,
        client_ip: str,
        anti_spam: Mapping[str, Any] | None = None,
        *,
        route: str = SUBMISSION_ROUTE,
    ) -> None:
        limit, window = self.project_limits(anti_spam)
        key = f"{route}:{project_id}:{client_ip}"
        if not await self._store.hit_if_below(key, limit, window):
            logger.info("project submission rate limited", project_id=str(project_id), client_ip=client_ip)
            raise RateLimitExceededError("Rate limit exceeded")

    def project_limits(self, anti_spam: Mapping[str, Any] | None) -> tuple[int, float]:
        config = (anti_spam or {}).get("rateLimit") or {}
        count = config.get("count") if isinstance(config, Mapping) else None
        window = config.get("windowSec") if isinstance(config, Mapping) else None
        limit = count if isinstance(count, int) and count > 0 else self._limit
        window_seconds = float(window) if isinstance(window, (int, float)) and window > 0 else self._window
        return limit, window_seconds
