"""HTTP delivery with bounded timeout and backoff retries."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping

import aiohttp
import structlog
from aiohttp import ClientSession, ClientTimeout

logger = structlog.get_logger(__name__)

RESPONSE_BODY_LIMIT = 500

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    ok: bool
    status: int
    body_text: str
    elapsed_ms: int | None
    attempt: int
    error: str | None = None


def backoff_seconds(attempt: int, backoff_ms: int) -> float:
    # attempt is 0-based
    return backoff_ms * (1.5 ** attempt) / 1000


async def _post_once(
    session: ClientSession,
    url: str,
    body: bytes,
    headers: Mapping[str, str],
    timeout_ms: int,
    body_limit: int,
) -> tuple[int, str, int]:
    started = time.monotonic()
    async with session.post(
        url,
        data=body,
        headers={"Content-Type": "application/json", **headers},
        timeout=ClientTimeout(total=timeout_ms / 1000),
    ) as resp:
        # the status line is in; a failed or stalled body read keeps it
        try:
            text = await resp.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError, UnicodeDecodeError, LookupError):
            text = ""
        elapsed_ms = int((time.monotonic() - started) * 1000)
        return resp.status, text[:body_limit], elapsed_ms


async def deliver(
    session: ClientSession,
    url: str,
    body: bytes,
    *,
    headers: Mapping[str, str] | None = None,
    timeout_ms: int = 4000,
    retries: int = 2,
    backoff_ms: int = 400,
    body_limit: int = RESPONSE_BODY_LIMIT,
    sleep: Sleep = asyncio.sleep,
) -> DeliveryResult:
    """POST ``body`` to ``url``, retrying transport failures only.

    Any HTTP response ends the loop: a 4xx/5xx is a delivered-but-rejected
    outcome and the caller reads it from ``ok``. Connection errors and
    timeouts are retried ``retries`` more times with ``backoff_ms * 1.5**n``
    between tries.
    """
    retries = max(0, retries)
    last_error = "error"
    for attempt in range(retries + 1):
        try:
            status, text, elapsed_ms = await _post_once(
                session, url, body, headers or {}, timeout_ms, body_limit
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            last_error = str(exc) or type(exc).__name__
            logger.debug("delivery attempt failed", url=url, attempt=attempt + 1, error=last_error)
            if attempt < retries:
                await sleep(backoff_seconds(attempt, backoff_ms))
            continue
        ok = 200 <= status < 300
        return DeliveryResult(
            ok=ok,
            status=status,
            body_text=text,
            elapsed_ms=elapsed_ms,
            attempt=attempt + 1,
            error=None if ok else (text or f"HTTP {status}"),
        )

    message = last_error[:body_limit]
    return DeliveryResult(
        ok=False,
        status=0,
        body_text=message,
        elapsed_ms=None,
        attempt=retries + 1,
        error=message,
    )
