"""API router composition for aiohttp."""
from __future__ import annotations

from aiohttp import web

from delivery_service.api.routes import digest, feedback, webhooks

ROUTE_MODULES = [
    feedback,
    webhooks,
    digest,
]


def setup_routes(app: web.Application) -> None:
    """Attach domain routes to the aiohttp application."""
    for module in ROUTE_MODULES:
        app.add_routes(module.routes)
