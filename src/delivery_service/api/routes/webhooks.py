"""Webhook configuration, delivery log, replay and test-send endpoints."""
from __future__ import annotations

from aiohttp import web

from delivery_service.api.utils import (
    page_params,
    paginated_response,
    parse_datetime,
    parse_int,
    parse_uuid,
    read_json,
)
from delivery_service.core.exceptions import (
    EndpointNotConfiguredError,
    InvalidWebhookConfigError,
    NotFoundError,
)
from delivery_service.domain.deliveries import DeliveryLogFilters
from delivery_service.domain.enums import EndpointKind
from delivery_service.services.dependencies import (
    EDITOR_ROLES,
    ensure_project_access,
    get_webhook_service,
    require_current_user,
)

routes = web.RouteTableDef()

CSV_DEFAULT_LIMIT = 1000
CSV_MAX_LIMIT = 5000


async def _project_from_path(request: web.Request, *, require_role: tuple[str, ...] | None = None):
    user = await require_current_user(request)
    project_id = parse_uuid(request.match_info["project_id"], "project_id")
    ensure_project_access(user, project_id, require_role=require_role)
    return project_id


def _log_filters(request: web.Request) -> DeliveryLogFilters:
    query = request.rel_url.query
    return DeliveryLogFilters(
        endpoint_id=query.get("endpoint_id") or None,
        event=query.get("event") or None,
        since=parse_datetime(query.get("since"), "since"),
        until=parse_datetime(query.get("until"), "until"),
    )


@routes.get("/api/v1/projects/{project_id}/webhooks")
async def get_webhook_config(request: web.Request):
    project_id = await _project_from_path(request)
    service = await get_webhook_service(request)
    try:
        config = await service.get_config(project_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(config)


@routes.put("/api/v1/projects/{project_id}/webhooks")
async def update_webhook_config(request: web.Request):
    project_id = await _project_from_path(request, require_role=EDITOR_ROLES)
    body = await read_json(request)
    service = await get_webhook_service(request)
    try:
        config = await service.update_config(project_id, body)
    except InvalidWebhookConfigError as exc:
        return web.json_response({"error": str(exc), "fields": exc.fields}, status=400)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(config)


@routes.get("/api/v1/projects/{project_id}/webhooks/logs")
async def list_delivery_logs(request: web.Request):
    project_id = await _project_from_path(request)
    filters = _log_filters(request)
    page, page_size = page_params(request, default_size=25)
    service = await get_webhook_service(request)
    items, total = await service.list_logs(
        project_id, filters, limit=page_size, offset=(page - 1) * page_size
    )
    payload = paginated_response(
        [item.model_dump(mode="json") for item in items],
        page=page,
        page_size=page_size,
        total=total,
    )
    return web.json_response(payload)


@routes.get("/api/v1/projects/{project_id}/webhooks/logs.csv")
async def export_delivery_logs(request: web.Request):
    project_id = await _project_from_path(request)
    filters = _log_filters(request)
    limit = parse_int(request.rel_url.query.get("limit"), "limit", default=CSV_DEFAULT_LIMIT)
    limit = min(CSV_MAX_LIMIT, max(1, limit))
    service = await get_webhook_service(request)
    text = await service.export_logs(project_id, filters, limit=limit)
    return web.Response(
        text=text,
        content_type="text/csv",
        charset="utf-8",
        headers={"Content-Disposition": 'attachment; filename="webhook_logs.csv"'},
    )


@routes.post("/api/v1/projects/{project_id}/webhooks/resend/{delivery_id}")
async def resend_delivery(request: web.Request):
    project_id = await _project_from_path(request, require_role=EDITOR_ROLES)
    delivery_id = parse_uuid(request.match_info["delivery_id"], "delivery_id")
    service = await get_webhook_service(request)
    try:
        ok = await service.resend(project_id, delivery_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except EndpointNotConfiguredError as exc:
        return web.json_response({"ok": False, "error": str(exc)}, status=400)
    return web.json_response({"ok": ok}, status=200 if ok else 400)


@routes.post("/api/v1/projects/{project_id}/webhooks/test")
async def send_test_webhook(request: web.Request):
    project_id = await _project_from_path(request, require_role=EDITOR_ROLES)
    query = request.rel_url.query
    try:
        kind = EndpointKind(query.get("kind", ""))
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid kind") from exc
    service = await get_webhook_service(request)
    try:
        result = await service.send_test(project_id, kind, query.get("endpoint") or None)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except EndpointNotConfiguredError as exc:
        return web.json_response({"ok": False, "error": str(exc)}, status=400)
    return web.json_response(result, status=200 if result["ok"] else 400)
