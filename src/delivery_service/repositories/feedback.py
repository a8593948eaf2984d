"""Feedback rows written by the widget and read by the digest."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Protocol
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from delivery_service.core.exceptions import NotFoundError
from delivery_service.domain.feedback import Feedback
from delivery_service.repositories.base import BaseRepository, affected_rows

_UPDATABLE_COLUMNS = ("is_read", "archived", "tags")


class FeedbackStore(Protocol):
    async def create(self, project_id: UUID, fields: dict[str, Any]) -> Feedback: ...

    async def get(self, feedback_id: UUID) -> Feedback: ...

    async def update(self, feedback_id: UUID, updates: dict[str, Any]) -> None: ...

    async def list_since(self, project_id: UUID, since: datetime) -> List[Feedback]: ...


class FeedbackRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> Feedback:
        payload = dict(record)
        attachments = payload.get("attachments")
        if isinstance(attachments, str):
            payload["attachments"] = json.loads(attachments)
        return Feedback.model_validate(payload)

    async def create(self, project_id: UUID, fields: dict[str, Any]) -> Feedback:
        attachments = fields.get("attachments")
        record = await self._fetchrow(
            """
            INSERT INTO feedback (
                project_id,
                message,
                email,
                url,
                user_agent,
                type,
                rating,
                priority,
                tags,
                screenshot_url,
                attachments
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::text[], $10, $11::jsonb)
            RETURNING *
            """,
            project_id,
            fields["message"],
            fields.get("email"),
            fields.get("url"),
            fields.get("user_agent"),
            fields.get("type"),
            fields.get("rating"),
            fields.get("priority"),
            fields.get("tags"),
            fields.get("screenshot_url"),
            json.dumps(attachments) if attachments is not None else None,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, feedback_id: UUID) -> Feedback:
        record = await self._fetchrow("SELECT * FROM feedback WHERE id = $1", feedback_id)
        if record is None:
            raise NotFoundError("Feedback not found")
        return self._to_model(record)

    async def update(self, feedback_id: UUID, updates: dict[str, Any]) -> None:
        assignments: list[str] = []
        args: list[Any] = [feedback_id]
        for column in _UPDATABLE_COLUMNS:
            if column not in updates:
                continue
            args.append(updates[column])
            cast = "::text[]" if column == "tags" else ""
            assignments.append(f"{column} = ${len(args)}{cast}")
        if not assignments:
            return
        status = await self._execute(
            f"UPDATE feedback SET {', '.join(assignments)} WHERE id = $1",
            *args,
        )
        if affected_rows(status) == 0:
            raise NotFoundError("Feedback not found")

    async def list_since(self, project_id: UUID, since: datetime) -> List[Feedback]:
        records = await self._fetch(
            """
            SELECT *
            FROM feedback
            WHERE project_id = $1 AND created_at >= $2
            ORDER BY created_at ASC
            """,
            project_id,
            since,
        )
        return [self._to_model(r) for r in records]
