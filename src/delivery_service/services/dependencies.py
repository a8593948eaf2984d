"""Shared dependency providers for aiohttp handlers and app lifecycle."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar
from uuid import UUID

from aiohttp import ClientSession, web

from delivery_service.db.pool import get_pool
from delivery_service.repositories import (
    DeliveryLogRepository,
    DeliveryLogStore,
    FeedbackRepository,
    FeedbackStore,
    PostgresRateLimitStore,
    ProjectRepository,
    ProjectStore,
)
from delivery_service.services.captcha import CaptchaVerifier
from delivery_service.services.delivery_log import DeliveryLogger
from delivery_service.services.digest import DigestService
from delivery_service.services.dispatcher import DeliveryOptions, DispatchCoordinator
from delivery_service.services.feedback import FeedbackService
from delivery_service.services.health import HealthMonitor
from delivery_service.services.payloads import Links
from delivery_service.services.rate_limit import (
    EndpointRateLimiter,
    MemoryRateLimitStore,
    RateLimitStore,
    SubmissionGate,
)
from delivery_service.services.webhooks import WebhookService
from delivery_service.settings import settings

TService = TypeVar("TService")

RUNTIME_KEY = "delivery_runtime"

_FEEDBACK_SERVICE_KEY = "feedback_service"
_WEBHOOK_SERVICE_KEY = "webhook_service"
_DIGEST_SERVICE_KEY = "digest_service"

USER_ID_HEADER = "X-User-Id"
PROJECT_ID_HEADER = "X-Project-Id"
PROJECT_ROLE_HEADER = "X-Project-Role"

EDITOR_ROLES = ("owner", "editor")


@dataclass
class Stores:
    projects: ProjectStore
    feedback: FeedbackStore
    deliveries: DeliveryLogStore
    rate_limits: RateLimitStore


@dataclass
class Runtime:
    """Per-application engine state, filled in by the startup hooks."""

    stores: Stores | None = None
    session: ClientSession | None = None
    coordinator: DispatchCoordinator | None = None


@dataclass
class UserContext:
    user_id: UUID
    project_roles: dict[UUID, str]
    active_project_id: UUID | None


async def require_current_user(request: web.Request) -> UserContext:
    """Identity comes from headers set by the API gateway."""
    user_header = request.headers.get(USER_ID_HEADER)
    if user_header is None:
        raise web.HTTPUnauthorized(reason=f"Header {USER_ID_HEADER} is required")
    try:
        user_id = UUID(user_header)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {USER_ID_HEADER}") from exc

    project_header = request.headers.get(PROJECT_ID_HEADER)
    project_id: UUID | None = None
    if project_header:
        try:
            project_id = UUID(project_header)
        except ValueError as exc:
            raise web.HTTPBadRequest(text=f"Invalid {PROJECT_ID_HEADER}") from exc

    role = request.headers.get(PROJECT_ROLE_HEADER)
    return UserContext(
        user_id=user_id,
        project_roles={project_id: role} if (project_id and role) else {},
        active_project_id=project_id,
    )


def ensure_project_access(
    user: UserContext,
    project_id: UUID,
    *,
    require_role: tuple[str, ...] | None = None,
) -> None:
    role = user.project_roles.get(project_id)
    if role is None:
        raise web.HTTPForbidden(reason="User does not belong to project")
    if require_role and role not in require_role:
        raise web.HTTPForbidden(reason="Insufficient project role")


async def build_postgres_stores() -> Stores:
    pool = await get_pool()
    rate_limits: RateLimitStore
    if settings.rate_limit_backend == "memory":
        rate_limits = MemoryRateLimitStore()
    else:
        rate_limits = PostgresRateLimitStore(pool)
    return Stores(
        projects=ProjectRepository(pool),
        feedback=FeedbackRepository(pool),
        deliveries=DeliveryLogRepository(pool),
        rate_limits=rate_limits,
    )


def build_coordinator(session: ClientSession, stores: Stores) -> DispatchCoordinator:
    return DispatchCoordinator(
        session,
        delivery_logger=DeliveryLogger(stores.deliveries, body_limit=settings.delivery_response_body_limit),
        health=HealthMonitor(stores.deliveries, stores.projects, threshold=settings.auto_disable_threshold),
        rate_limiter=EndpointRateLimiter(stores.rate_limits, window_seconds=settings.endpoint_rate_window_seconds),
        links=Links(settings.app_base_url),
        options=DeliveryOptions.from_settings(settings),
    )


def get_runtime(app: web.Application) -> Runtime:
    return app[RUNTIME_KEY]


def get_stores(app: web.Application) -> Stores:
    stores = get_runtime(app).stores
    if stores is None:
        raise RuntimeError("Stores not initialized")
    return stores


def get_coordinator(app: web.Application) -> DispatchCoordinator:
    coordinator = get_runtime(app).coordinator
    if coordinator is None:
        raise RuntimeError("Dispatch coordinator not started")
    return coordinator


def build_digest_service(app: web.Application) -> DigestService:
    stores = get_stores(app)
    return DigestService(
        stores.projects,
        stores.feedback,
        get_coordinator(app),
        max_items=settings.digest_max_items,
    )


async def _get_or_create_service(
    request: web.Request,
    cache_key: str,
    builder: Callable[[web.Request], Awaitable[TService]],
) -> TService:
    service = request.get(cache_key)
    if service is None:
        service = await builder(request)
        request[cache_key] = service
    return service


async def get_feedback_service(request: web.Request) -> FeedbackService:
    async def builder(req: web.Request) -> FeedbackService:
        stores = get_stores(req.app)
        return FeedbackService(
            stores.projects,
            stores.feedback,
            get_coordinator(req.app),
            SubmissionGate(
                stores.rate_limits,
                limit=settings.submission_rate_limit,
                window_seconds=settings.submission_rate_window_seconds,
            ),
            CaptchaVerifier(
                get_runtime(req.app).session,
                secrets={"turnstile": settings.turnstile_secret, "hcaptcha": settings.hcaptcha_secret},
            ),
            created_budget_seconds=settings.dispatch_budget_created_seconds,
            updated_budget_seconds=settings.dispatch_budget_updated_seconds,
        )

    return await _get_or_create_service(request, _FEEDBACK_SERVICE_KEY, builder)


async def get_webhook_service(request: web.Request) -> WebhookService:
    async def builder(req: web.Request) -> WebhookService:
        stores = get_stores(req.app)
        return WebhookService(stores.projects, stores.deliveries, get_coordinator(req.app))

    return await _get_or_create_service(request, _WEBHOOK_SERVICE_KEY, builder)


async def get_digest_service(request: web.Request) -> DigestService:
    async def builder(req: web.Request) -> DigestService:
        return build_digest_service(req.app)

    return await _get_or_create_service(request, _DIGEST_SERVICE_KEY, builder)
