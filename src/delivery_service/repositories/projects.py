"""Project lookups and webhook configuration storage."""
from __future__ import annotations

import json
from typing import Any, List, Protocol
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from delivery_service.core.exceptions import NotFoundError
from delivery_service.domain.enums import EndpointKind
from delivery_service.domain.feedback import Project
from delivery_service.repositories.base import BaseRepository
from delivery_service.services.normalizer import disable_endpoint_in_config


class ProjectStore(Protocol):
    async def get(self, project_id: UUID) -> Project: ...

    async def get_by_api_key(self, api_key: str) -> Project: ...

    async def list_all(self) -> List[Project]: ...

    async def update_webhooks(self, project_id: UUID, webhooks: dict[str, Any]) -> Project: ...

    async def disable_endpoint(self, project_id: UUID, kind: EndpointKind, endpoint_id: str) -> bool: ...


def _json_column(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        value = json.loads(value)
    return dict(value) if isinstance(value, dict) else {}


class ProjectRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> Project:
        payload = dict(record)
        payload["webhooks"] = _json_column(payload.get("webhooks"))
        payload["anti_spam"] = _json_column(payload.get("anti_spam"))
        return Project.model_validate(payload)

    async def get(self, project_id: UUID) -> Project:
        record = await self._fetchrow(
            "SELECT id, name, owner_user_id, webhooks, anti_spam FROM projects WHERE id = $1",
            project_id,
        )
        if record is None:
            raise NotFoundError("Project not found")
        return self._to_model(record)

    async def get_by_api_key(self, api_key: str) -> Project:
        record = await self._fetchrow(
            "SELECT id, name, owner_user_id, webhooks, anti_spam FROM projects WHERE api_key = $1",
            api_key,
        )
        if record is None:
            raise NotFoundError("Invalid API key")
        return self._to_model(record)

    async def list_all(self) -> List[Project]:
        records = await self._fetch(
            """
            SELECT id, name, owner_user_id, webhooks, anti_spam
            FROM projects
            WHERE webhooks IS NOT NULL
            ORDER BY created_at ASC
            """
        )
        return [self._to_model(r) for r in records]

    async def update_webhooks(self, project_id: UUID, webhooks: dict[str, Any]) -> Project:
        record = await self._fetchrow(
            """
            UPDATE projects
            SET webhooks = $2::jsonb,
                updated_at = now()
            WHERE id = $1
            RETURNING id, name, owner_user_id, webhooks, anti_spam
            """,
            project_id,
            json.dumps(webhooks),
        )
        if record is None:
            raise NotFoundError("Project not found")
        return self._to_model(record)

    async def disable_endpoint(self, project_id: UUID, kind: EndpointKind, endpoint_id: str) -> bool:
        """Flip one endpoint's ``enabled`` flag off under a row lock."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                record = await conn.fetchrow(
                    "SELECT webhooks FROM projects WHERE id = $1 FOR UPDATE",
                    project_id,
                )
                if record is None:
                    raise NotFoundError("Project not found")
                config, changed = disable_endpoint_in_config(
                    _json_column(record["webhooks"]), kind, endpoint_id
                )
                if changed:
                    await conn.execute(
                        "UPDATE projects SET webhooks = $2::jsonb, updated_at = now() WHERE id = $1",
                        project_id,
                        json.dumps(config),
                    )
                return changed
