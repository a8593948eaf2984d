"""Feedback ingestion (public widget) and triage endpoints."""
from __future__ import annotations

import json

from aiohttp import web
from pydantic import ValidationError

from delivery_service.api.utils import client_ip, parse_uuid, read_json
from delivery_service.core.exceptions import (
    CaptchaVerificationError,
    NotFoundError,
    RateLimitExceededError,
)
from delivery_service.domain.feedback import FeedbackSubmitDTO, FeedbackUpdateDTO
from delivery_service.services.dependencies import (
    EDITOR_ROLES,
    ensure_project_access,
    get_feedback_service,
    require_current_user,
)
from delivery_service.services.feedback import EmptyUpdateError

routes = web.RouteTableDef()


def _failure(exc_class: type[web.HTTPException], message: str) -> web.HTTPException:
    return exc_class(
        text=json.dumps({"success": False, "error": message}),
        content_type="application/json",
    )


@routes.post("/api/v1/feedback")
async def submit_feedback(request: web.Request):
    service = await get_feedback_service(request)
    ip = client_ip(request)
    try:
        await service.check_client(ip)
    except RateLimitExceededError as exc:
        raise _failure(web.HTTPTooManyRequests, str(exc)) from exc

    body = await read_json(request)
    try:
        dto = FeedbackSubmitDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json(), content_type="application/json") from exc

    try:
        feedback = await service.submit(dto, ip)
    except NotFoundError as exc:
        raise _failure(web.HTTPNotFound, str(exc)) from exc
    except RateLimitExceededError as exc:
        raise _failure(web.HTTPTooManyRequests, str(exc)) from exc
    except CaptchaVerificationError as exc:
        raise _failure(web.HTTPBadRequest, str(exc)) from exc
    return web.json_response({"success": True, "id": str(feedback.id)})


@routes.patch("/api/v1/feedbacks/{feedback_id}")
async def update_feedback(request: web.Request):
    user = await require_current_user(request)
    feedback_id = parse_uuid(request.match_info["feedback_id"], "feedback_id")
    body = await read_json(request)
    try:
        dto = FeedbackUpdateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json(), content_type="application/json") from exc

    service = await get_feedback_service(request)
    try:
        project_id = await service.project_of(feedback_id)
        ensure_project_access(user, project_id, require_role=EDITOR_ROLES)
        await service.update(feedback_id, dto)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except EmptyUpdateError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    return web.json_response({"ok": True})
