"""Worker: drop expired sliding-window counter rows."""
from __future__ import annotations

from datetime import datetime

from aiohttp import web

from delivery_service.services.dependencies import get_stores
from delivery_service.settings import settings


async def rate_limit_purge(app: web.Application, now: datetime) -> str | None:
    """Delete hits older than ``rate_limit_retention_seconds``."""
    purged = await get_stores(app).rate_limits.purge(settings.rate_limit_retention_seconds)
    return f"purged={purged}" if purged else None
