"""Helper utilities for API handlers."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from aiohttp import web


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse a JSON object body, raising HTTPBadRequest on anything else."""
    try:
        data = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value if isinstance(value, str) else str(value))
    except (ValueError, TypeError) as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc


def parse_datetime(value: str | None, label: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {label}") from exc


def parse_int(value: str | None, label: str, *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"{label} must be an integer") from exc


def page_params(
    request: web.Request,
    *,
    default_size: int = 20,
    max_size: int = 100,
) -> tuple[int, int]:
    """``page`` (1-based) and ``pageSize`` query params, clamped."""
    query = request.rel_url.query
    page = max(1, parse_int(query.get("page"), "page", default=1))
    size = parse_int(query.get("pageSize"), "pageSize", default=default_size)
    if size <= 0:
        size = default_size
    return page, min(size, max_size)


def paginated_response(items: list[Any], *, page: int, page_size: int, total: int) -> dict[str, Any]:
    return {
        "items": items,
        "total": total,
        "page": page,
        "pageSize": page_size,
    }


def client_ip(request: web.Request) -> str:
    """First hop of ``X-Forwarded-For``, else the peer address."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.remote or "unknown"
