"""Auto-disable endpoints after consecutive failed deliveries."""
from __future__ import annotations

from typing import Iterable
from uuid import UUID

import structlog

from delivery_service.core.guard import non_fatal
from delivery_service.domain.enums import DeliveryStatus
from delivery_service.domain.webhooks import Endpoint
from delivery_service.repositories.deliveries import DeliveryLogStore
from delivery_service.repositories.projects import ProjectStore

logger = structlog.get_logger(__name__)


def leading_failures(statuses: Iterable[str]) -> int:
    """Length of the run of failures at the head of a newest-first status list."""
    run = 0
    for status in statuses:
        if getattr(status, "value", status) != DeliveryStatus.FAILED.value:
            break
        run += 1
    return run


class HealthMonitor:
    def __init__(self, deliveries: DeliveryLogStore, projects: ProjectStore, *, threshold: int = 3):
        self._deliveries = deliveries
        self._projects = projects
        self._threshold = threshold

    async def should_disable(self, project_id: UUID, endpoint: Endpoint) -> bool:
        statuses = await self._deliveries.recent_statuses(project_id, endpoint.id, self._threshold)
        return leading_failures(statuses) >= self._threshold

    async def record_failure(self, project_id: UUID, endpoint: Endpoint) -> bool:
        """Disable ``endpoint`` once its newest outcomes are all failures.

        Called after the failed attempt has been logged. Returns whether the
        stored config changed; re-enabling is left to the project owner.
        """
        async with non_fatal("health.record_failure", project_id=str(project_id), endpoint_id=endpoint.id):
            if not await self.should_disable(project_id, endpoint):
                return False
            changed = await self._projects.disable_endpoint(project_id, endpoint.kind, endpoint.id)
            if changed:
                logger.warning(
                    "Endpoint auto-disabled after consecutive failures",
                    project_id=str(project_id),
                    endpoint_id=endpoint.id,
                    kind=endpoint.kind.value,
                    threshold=self._threshold,
                )
            return changed
        return False
