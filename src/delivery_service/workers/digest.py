"""Worker: scheduled hourly digest, for deployments without an external cron."""
from __future__ import annotations

from datetime import datetime

from aiohttp import web

from delivery_service.services.dependencies import build_digest_service


async def hourly_digest(app: web.Application, now: datetime) -> str | None:
    report = await build_digest_service(app).run()
    if not (report.sent or report.failed):
        return None
    return f"sent={report.sent} failed={report.failed} skipped={report.skipped}"
