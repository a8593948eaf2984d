"""Operator surfaces over webhook config and the delivery log."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Tuple
from uuid import UUID

import structlog

from delivery_service.core.exceptions import EndpointNotConfiguredError, InvalidWebhookConfigError
from delivery_service.domain.deliveries import DeliveryAttempt, DeliveryLogFilters
from delivery_service.domain.enums import DispatchOutcome, EndpointKind
from delivery_service.domain.webhooks import Endpoint
from delivery_service.repositories.deliveries import DeliveryLogStore
from delivery_service.repositories.projects import ProjectStore
from delivery_service.services.delivery_log import render_csv
from delivery_service.services.dispatcher import DispatchCoordinator
from delivery_service.services.normalizer import derive_endpoint_id, find_endpoint, normalize_config, validate_config
from delivery_service.services.payloads import build_test_payload

logger = structlog.get_logger(__name__)


class WebhookService:
    def __init__(
        self,
        projects: ProjectStore,
        deliveries: DeliveryLogStore,
        coordinator: DispatchCoordinator,
    ):
        self._projects = projects
        self._deliveries = deliveries
        self._coordinator = coordinator

    async def get_config(self, project_id: UUID) -> dict[str, Any]:
        project = await self._projects.get(project_id)
        return project.webhooks

    async def update_config(self, project_id: UUID, webhooks: dict[str, Any]) -> dict[str, Any]:
        invalid = validate_config(webhooks)
        if invalid:
            raise InvalidWebhookConfigError(invalid)
        project = await self._projects.update_webhooks(project_id, webhooks)
        logger.info("Webhook config updated", project_id=str(project_id), endpoints=len(normalize_config(webhooks)))
        return project.webhooks

    async def list_logs(
        self,
        project_id: UUID,
        filters: DeliveryLogFilters,
        *,
        limit: int,
        offset: int,
    ) -> Tuple[List[DeliveryAttempt], int]:
        return await self._deliveries.list(project_id, filters, limit=limit, offset=offset)

    async def export_logs(self, project_id: UUID, filters: DeliveryLogFilters, *, limit: int) -> str:
        records = await self._deliveries.list_for_export(project_id, filters, limit=limit)
        return render_csv(records)

    async def resend(self, project_id: UUID, delivery_id: UUID) -> bool:
        """Replay a logged delivery once with the endpoint's current settings."""
        record = await self._deliveries.get(project_id, delivery_id)
        if record.payload is None:
            raise EndpointNotConfiguredError("No payload stored for this delivery")
        project = await self._projects.get(project_id)
        endpoint = self._resolve_endpoint(project.webhooks, record)
        outcome = await self._coordinator.deliver_envelope(
            project_id,
            endpoint,
            record.payload,
            retries=0,
            apply_rate_limit=False,
        )
        logger.info(
            "Webhook delivery resent",
            project_id=str(project_id),
            delivery_id=str(delivery_id),
            endpoint_id=endpoint.id,
            outcome=outcome.outcome.value,
        )
        return outcome.outcome is DispatchOutcome.DELIVERED

    @staticmethod
    def _resolve_endpoint(config: dict[str, Any], record: DeliveryAttempt) -> Endpoint:
        if record.endpoint_id:
            current = find_endpoint(config, record.endpoint_id)
            if current is not None:
                return current
        # endpoint removed since: replay to the logged target as a bare legacy endpoint
        return Endpoint(
            id=record.endpoint_id or derive_endpoint_id(record.url),
            kind=record.kind,
            url=record.url,
            enabled=True,
        )

    async def send_test(
        self,
        project_id: UUID,
        kind: EndpointKind,
        endpoint_id: str | None = None,
    ) -> dict[str, Any]:
        project = await self._projects.get(project_id)
        candidates = [e for e in normalize_config(project.webhooks) if e.kind is kind]
        if endpoint_id:
            candidates = [e for e in candidates if e.id == endpoint_id]
        endpoint = candidates[0] if candidates else None
        if endpoint is None or not endpoint.enabled:
            raise EndpointNotConfiguredError("Not configured")
        payload = build_test_payload(endpoint, project.name, datetime.now(timezone.utc))
        result = await self._coordinator.send_once(endpoint, payload)
        logger.info(
            "Test webhook sent",
            project_id=str(project_id),
            endpoint_id=endpoint.id,
            kind=kind.value,
            status=result.status,
        )
        return {"ok": result.ok, "status": result.status}
