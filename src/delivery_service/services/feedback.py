"""Feedback ingestion and triage: the triggers for created/updated events."""
from __future__ import annotations

from typing import Any
from uuid import UUID

import structlog

from delivery_service.domain.enums import EventKind
from delivery_service.domain.feedback import Feedback, FeedbackEvent, FeedbackSubmitDTO, FeedbackUpdateDTO
from delivery_service.repositories.feedback import FeedbackStore
from delivery_service.repositories.projects import ProjectStore
from delivery_service.services.captcha import CaptchaVerifier
from delivery_service.services.dispatcher import DispatchBatch, DispatchCoordinator
from delivery_service.services.rate_limit import SubmissionGate

logger = structlog.get_logger(__name__)


class EmptyUpdateError(ValueError):
    """Raised when a triage request carries no applicable change."""


def build_update(current: Feedback, dto: FeedbackUpdateDTO) -> tuple[dict[str, Any], dict[str, Any]]:
    """Column updates plus the ``changes`` map shipped with the updated event."""
    updates: dict[str, Any] = {}
    changes: dict[str, Any] = {}
    if dto.is_read is not None:
        updates["is_read"] = dto.is_read
        changes["is_read"] = dto.is_read
    if dto.archived is not None:
        updates["archived"] = dto.archived
        changes["archived"] = dto.archived

    tags = list(current.tags or [])
    add = (dto.add_tag or "").strip()
    remove = (dto.remove_tag or "").strip()
    if add:
        tags = list(dict.fromkeys([*tags, add]))
        changes["add_tag"] = add
    if remove:
        tags = [tag for tag in tags if tag != remove]
        changes["remove_tag"] = remove
    if add or remove:
        updates["tags"] = tags
        changes["tags"] = tags
    return updates, changes


class FeedbackService:
    def __init__(
        self,
        projects: ProjectStore,
        feedback: FeedbackStore,
        coordinator: DispatchCoordinator,
        gate: SubmissionGate,
        captcha: CaptchaVerifier,
        *,
        created_budget_seconds: float = 2.0,
        updated_budget_seconds: float = 1.5,
    ):
        self._projects = projects
        self._feedback = feedback
        self._coordinator = coordinator
        self._gate = gate
        self._captcha = captcha
        self._created_budget = created_budget_seconds
        self._updated_budget = updated_budget_seconds

    async def check_client(self, client_ip: str) -> None:
        await self._gate.check_client(client_ip)

    async def submit(self, dto: FeedbackSubmitDTO, client_ip: str) -> Feedback:
        """Persist a widget submission and notify the project's endpoints.

        The client gate has already run; this resolves the project, applies
        the project gate and captcha, stores the row and dispatches
        ``created`` within its budget. Delivery never affects the result.
        """
        project = await self._projects.get_by_api_key(dto.api_key)
        await self._gate.check_project(project.id, client_ip, project.anti_spam)
        await self._captcha.verify(project.anti_spam, dto.captcha_token, remote_ip=client_ip)

        fields = dto.model_dump(exclude={"api_key", "captcha_token"}, mode="json")
        feedback = await self._feedback.create(project.id, fields)
        logger.info("Feedback stored", project_id=str(project.id), feedback_id=str(feedback.id))

        event = FeedbackEvent.from_feedback(feedback, project_name=project.name)
        await self._coordinator.dispatch_within_budget(
            event, EventKind.CREATED, project.webhooks, self._created_budget
        )
        return feedback

    async def update(self, feedback_id: UUID, dto: FeedbackUpdateDTO) -> DispatchBatch:
        current = await self._feedback.get(feedback_id)
        updates, changes = build_update(current, dto)
        if not updates:
            raise EmptyUpdateError("No updates")
        project = await self._projects.get(current.project_id)
        await self._feedback.update(feedback_id, updates)

        fresh = await self._feedback.get(feedback_id)
        event = FeedbackEvent.from_feedback(fresh, project_name=project.name, changes=changes)
        logger.info("Feedback updated", project_id=str(project.id), feedback_id=str(feedback_id), changes=list(changes))
        return await self._coordinator.dispatch_within_budget(
            event, EventKind.UPDATED, project.webhooks, self._updated_budget
        )

    async def project_of(self, feedback_id: UUID) -> UUID:
        current = await self._feedback.get(feedback_id)
        return current.project_id
