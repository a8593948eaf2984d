"""Delivery attempt log records."""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from delivery_service.domain.enums import DeliveryStatus, EndpointKind


class DeliveryAttemptCreate(BaseModel):
    project_id: UUID
    endpoint_id: str | None = None
    kind: EndpointKind
    url: str
    event: str
    status: DeliveryStatus
    status_code: int | None = None
    error: str | None = None
    payload: dict[str, Any] | None = None
    response_time_ms: int | None = None
    response_body: str | None = None
    attempt: int | None = None


class DeliveryAttempt(DeliveryAttemptCreate):
    """Append-only record of one terminal delivery outcome."""

    id: UUID
    created_at: datetime


class DeliveryLogFilters(BaseModel):
    endpoint_id: str | None = None
    event: str | None = None
    since: datetime | None = None
    until: datetime | None = None
