"""Best-effort delivery log writer plus CSV export of the log."""
from __future__ import annotations

import csv
import io
from typing import Any, Iterable, Mapping
from uuid import UUID

import structlog

from delivery_service.core.guard import non_fatal
from delivery_service.domain.deliveries import DeliveryAttempt, DeliveryAttemptCreate
from delivery_service.domain.enums import DeliveryStatus
from delivery_service.domain.webhooks import Endpoint
from delivery_service.repositories.deliveries import DeliveryLogStore
from delivery_service.services.executor import RESPONSE_BODY_LIMIT, DeliveryResult

logger = structlog.get_logger(__name__)

CSV_COLUMNS = (
    "created_at",
    "endpoint_id",
    "kind",
    "event",
    "status",
    "status_code",
    "response_time_ms",
    "url",
    "error",
)


class DeliveryLogger:
    def __init__(self, store: DeliveryLogStore, *, body_limit: int = RESPONSE_BODY_LIMIT):
        self._store = store
        self._body_limit = body_limit

    def build_record(
        self,
        *,
        project_id: UUID,
        endpoint: Endpoint,
        event: str,
        payload: Mapping[str, Any] | None,
        result: DeliveryResult,
    ) -> DeliveryAttemptCreate:
        body = (result.body_text or "")[: self._body_limit] or None
        return DeliveryAttemptCreate(
            project_id=project_id,
            endpoint_id=endpoint.id,
            kind=endpoint.kind,
            url=endpoint.url,
            event=event,
            status=DeliveryStatus.SUCCESS if result.ok else DeliveryStatus.FAILED,
            # 0 means no HTTP response was received
            status_code=result.status or None,
            error=None if result.ok else (result.error or body or "error")[: self._body_limit],
            payload=dict(payload) if payload is not None else None,
            response_time_ms=result.elapsed_ms,
            response_body=body,
            attempt=result.attempt,
        )

    async def record(
        self,
        *,
        project_id: UUID,
        endpoint: Endpoint,
        event: str,
        payload: Mapping[str, Any] | None,
        result: DeliveryResult,
    ) -> DeliveryAttempt | None:
        """Append one terminal outcome; never raises."""
        async with non_fatal("delivery_log.record", project_id=str(project_id), endpoint_id=endpoint.id):
            record = self.build_record(
                project_id=project_id,
                endpoint=endpoint,
                event=event,
                payload=payload,
                result=result,
            )
            stored = await self._store.insert(record)
            logger.info(
                "Webhook delivery recorded",
                project_id=str(project_id),
                endpoint_id=endpoint.id,
                kind=endpoint.kind.value,
                event=event,
                status=record.status.value,
                status_code=record.status_code,
                attempt=record.attempt,
            )
            return stored
        return None


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(getattr(value, "value", value))


def render_csv(records: Iterable[DeliveryAttempt]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for record in records:
        writer.writerow([_csv_cell(getattr(record, column)) for column in CSV_COLUMNS])
    return buffer.getvalue()
