"""Cron-triggered hourly digest."""
from __future__ import annotations

import hmac

from aiohttp import web

from delivery_service.services.dependencies import get_digest_service
from delivery_service.settings import settings

routes = web.RouteTableDef()

CRON_SECRET_HEADER = "X-Cron-Secret"


def _authorized(request: web.Request) -> bool:
    expected = settings.cron_secret
    if not expected:
        return True
    provided = request.headers.get(CRON_SECRET_HEADER) or request.rel_url.query.get("secret") or ""
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def run_digest(request: web.Request):
    if not _authorized(request):
        raise web.HTTPUnauthorized(text="Unauthorized")
    service = await get_digest_service(request)
    report = await service.run()
    return web.json_response({**report.as_dict(), "window": "1h"})


routes.post("/api/v1/webhooks/digest")(run_digest)
routes.get("/api/v1/webhooks/digest")(run_digest)
