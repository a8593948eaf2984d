"""Append-only delivery log (``webhook_deliveries``)."""
from __future__ import annotations

import json
from typing import Any, List, Protocol, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from delivery_service.core.exceptions import NotFoundError
from delivery_service.domain.deliveries import DeliveryAttempt, DeliveryAttemptCreate, DeliveryLogFilters
from delivery_service.repositories.base import BaseRepository


class DeliveryLogStore(Protocol):
    async def insert(self, record: DeliveryAttemptCreate) -> DeliveryAttempt: ...

    async def recent_statuses(self, project_id: UUID, endpoint_id: str, limit: int) -> List[str]: ...

    async def list(
        self,
        project_id: UUID,
        filters: DeliveryLogFilters,
        *,
        limit: int,
        offset: int,
    ) -> Tuple[List[DeliveryAttempt], int]: ...

    async def list_for_export(
        self, project_id: UUID, filters: DeliveryLogFilters, *, limit: int
    ) -> List[DeliveryAttempt]: ...

    async def get(self, project_id: UUID, delivery_id: UUID) -> DeliveryAttempt: ...


def _filter_clause(project_id: UUID, filters: DeliveryLogFilters) -> tuple[str, list[Any]]:
    conditions = ["project_id = $1"]
    args: list[Any] = [project_id]
    for column, op, value in (
        ("endpoint_id", "=", filters.endpoint_id),
        ("event", "=", filters.event),
        ("created_at", ">=", filters.since),
        ("created_at", "<=", filters.until),
    ):
        if value is None:
            continue
        args.append(value)
        conditions.append(f"{column} {op} ${len(args)}")
    return " AND ".join(conditions), args


class DeliveryLogRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> DeliveryAttempt:
        payload = dict(record)
        payload.pop("total_count", None)
        value = payload.get("payload")
        if isinstance(value, str):
            payload["payload"] = json.loads(value)
        return DeliveryAttempt.model_validate(payload)

    async def insert(self, record: DeliveryAttemptCreate) -> DeliveryAttempt:
        row = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                project_id,
                endpoint_id,
                kind,
                url,
                event,
                status,
                status_code,
                error,
                payload,
                response_time_ms,
                response_body,
                attempt
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10, $11, $12)
            RETURNING *
            """,
            record.project_id,
            record.endpoint_id,
            record.kind.value,
            record.url,
            record.event,
            record.status.value,
            record.status_code,
            record.error,
            json.dumps(record.payload) if record.payload is not None else None,
            record.response_time_ms,
            record.response_body,
            record.attempt,
        )
        assert row is not None
        return self._to_model(row)

    async def recent_statuses(self, project_id: UUID, endpoint_id: str, limit: int) -> List[str]:
        records = await self._fetch(
            """
            SELECT status
            FROM webhook_deliveries
            WHERE project_id = $1 AND endpoint_id = $2
            ORDER BY created_at DESC
            LIMIT $3
            """,
            project_id,
            endpoint_id,
            limit,
        )
        return [r["status"] for r in records]

    async def list(
        self,
        project_id: UUID,
        filters: DeliveryLogFilters,
        *,
        limit: int,
        offset: int,
    ) -> Tuple[List[DeliveryAttempt], int]:
        where, args = _filter_clause(project_id, filters)
        records = await self._fetch(
            f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) + 1} OFFSET ${len(args) + 2}
            """,
            *args,
            limit,
            offset,
        )
        items: List[DeliveryAttempt] = []
        total: int | None = None
        for rec in records:
            total_value = rec["total_count"]
            if total_value is not None:
                total = int(total_value)
            items.append(self._to_model(rec))
        if total is None:
            total = await self._count(where, args)
        return items, total

    async def _count(self, where: str, args: list[Any]) -> int:
        value = await self._fetchval(f"SELECT COUNT(*) FROM webhook_deliveries WHERE {where}", *args)
        return int(value or 0)

    async def list_for_export(
        self, project_id: UUID, filters: DeliveryLogFilters, *, limit: int
    ) -> List[DeliveryAttempt]:
        where, args = _filter_clause(project_id, filters)
        records = await self._fetch(
            f"""
            SELECT *
            FROM webhook_deliveries
            WHERE {where}
            ORDER BY created_at DESC
            LIMIT ${len(args) + 1}
            """,
            *args,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def get(self, project_id: UUID, delivery_id: UUID) -> DeliveryAttempt:
        row = await self._fetchrow(
            "SELECT * FROM webhook_deliveries WHERE project_id = $1 AND id = $2",
            project_id,
            delivery_id,
        )
        if row is None:
            raise NotFoundError("Delivery not found")
        return self._to_model(row)
