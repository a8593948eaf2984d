"""aiohttp application entrypoint."""
from __future__ import annotations

import structlog
from aiohttp import ClientSession, web
from aiohttp_cors import ResourceOptions, setup as cors_setup

from delivery_service.api.router import setup_routes
from delivery_service.db.migrations import apply_migrations_on_startup
from delivery_service.db.pool import close_pool, init_pool
from delivery_service.logging_config import configure_logging
from delivery_service.middleware.trace import create_trace_middleware
from delivery_service.services.dependencies import (
    RUNTIME_KEY,
    Runtime,
    Stores,
    build_coordinator,
    build_postgres_stores,
    get_runtime,
)
from delivery_service.settings import settings
from delivery_service.workers import digest_worker, maintenance_worker

# Configure structured logging
configure_logging()

logger = structlog.get_logger(__name__)

# Public widget submissions come from any site
_PUBLIC_ROUTES = {"/api/v1/feedback"}


async def healthcheck(request: web.Request) -> web.Response:
    runtime = get_runtime(request.app)
    inflight = runtime.coordinator.inflight if runtime.coordinator else 0
    return web.json_response(
        {"status": "ok", "service": settings.app_name, "env": settings.env, "inflight_deliveries": inflight}
    )


async def init_stores(app: web.Application) -> None:
    runtime = get_runtime(app)
    if runtime.stores is None:
        runtime.stores = await build_postgres_stores()


async def start_engine(app: web.Application) -> None:
    runtime = get_runtime(app)
    assert runtime.stores is not None
    runtime.session = ClientSession()
    runtime.coordinator = build_coordinator(runtime.session, runtime.stores)
    logger.info("Delivery engine started")


async def stop_engine(app: web.Application) -> None:
    runtime = get_runtime(app)
    if runtime.coordinator is not None:
        await runtime.coordinator.aclose()
        runtime.coordinator = None
    if runtime.session is not None:
        await runtime.session.close()
        runtime.session = None


def create_app(stores: Stores | None = None, *, run_workers: bool = True) -> web.Application:
    """Build the application; ``stores`` replaces the Postgres-backed stores."""
    app = web.Application()
    app[RUNTIME_KEY] = Runtime(stores=stores)

    # Add trace middleware first (before other middleware)
    app.middlewares.append(create_trace_middleware(settings.app_name))

    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers="*",
                allow_headers="*",
                allow_methods="*",
            )
            for origin in settings.cors_allowed_origins
        },
    )
    public = ResourceOptions(allow_credentials=False, expose_headers="*", allow_headers="*", allow_methods="*")

    app.router.add_get("/health", healthcheck)
    setup_routes(app)

    if stores is None:
        app.on_startup.append(init_pool)
        app.on_startup.append(apply_migrations_on_startup)
        app.on_startup.append(init_stores)
        app.on_cleanup.append(close_pool)
    app.on_startup.append(start_engine)
    # registered before close_pool runs so background deliveries can still log
    app.on_cleanup.insert(0, stop_engine)

    if run_workers:
        app.on_startup.append(maintenance_worker.start)
        app.on_cleanup.insert(0, maintenance_worker.stop)
        if settings.digest_scheduler_enabled:
            app.on_startup.append(digest_worker.start)
            app.on_cleanup.insert(0, digest_worker.stop)

    for route in list(app.router.routes()):
        if route.resource is not None and route.resource.canonical in _PUBLIC_ROUTES:
            cors.add(route, {"*": public})
        else:
            cors.add(route)

    return app


def main() -> None:
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
