"""Non-fatal zone for best-effort delivery work.

Delivery, logging and health bookkeeping must never fail the request that
triggered them. Code inside :func:`non_fatal` may raise freely; the error is
logged with its context and dropped at the zone boundary.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def non_fatal(operation: str, **context) -> AsyncIterator[None]:
    try:
        yield
    except Exception:
        # CancelledError derives from BaseException and passes through
        logger.exception("non_fatal operation failed", operation=operation, **context)
