"""Hourly digest: summarize recent feedback per digest endpoint."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List

import structlog

from delivery_service.core.guard import non_fatal
from delivery_service.domain.enums import DispatchOutcome, EventKind
from delivery_service.domain.feedback import Project
from delivery_service.repositories.feedback import FeedbackStore
from delivery_service.repositories.projects import ProjectStore
from delivery_service.services.dispatcher import DispatchCoordinator, EndpointOutcome
from delivery_service.services.normalizer import normalize_config
from delivery_service.services.payloads import build_digest_envelope
from delivery_service.services.rules import matches

logger = structlog.get_logger(__name__)

DIGEST_WINDOW = timedelta(hours=1)


@dataclass
class DigestReport:
    projects: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return {
            "ok": True,
            "projects": self.projects,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
        }


class DigestService:
    def __init__(
        self,
        projects: ProjectStore,
        feedback: FeedbackStore,
        coordinator: DispatchCoordinator,
        *,
        max_items: int = 25,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._projects = projects
        self._feedback = feedback
        self._coordinator = coordinator
        self._max_items = max_items
        self._clock = clock

    async def run(self) -> DigestReport:
        """Start every project's digest deliveries, then wait for all of them.

        Deliveries run concurrently so a slow endpoint does not hold up the
        rest of the run.
        """
        until = self._clock()
        since = until - DIGEST_WINDOW
        report = DigestReport()
        tasks: List["asyncio.Task[EndpointOutcome]"] = []
        for project in await self._projects.list_all():
            async with non_fatal("digest.project", project_id=str(project.id)):
                tasks.extend(await self._spawn_project(project, since, until, report))
        if tasks:
            await asyncio.wait(tasks)
        for task in tasks:
            outcome = task.result().outcome
            if outcome is DispatchOutcome.DELIVERED:
                report.sent += 1
            elif outcome is DispatchOutcome.RATE_LIMITED:
                report.skipped += 1
            else:
                report.failed += 1
        logger.info("Digest run finished", **report.as_dict())
        return report

    async def _spawn_project(
        self, project: Project, since: datetime, until: datetime, report: DigestReport
    ) -> List["asyncio.Task[EndpointOutcome]"]:
        endpoints = [
            endpoint
            for endpoint in normalize_config(project.webhooks)
            if endpoint.enabled
            and EventKind.DIGEST in endpoint.subscribed_events
            and endpoint.digest_interval == "hourly"
        ]
        if not endpoints:
            return []
        report.projects += 1
        recent = await self._feedback.list_since(project.id, since)
        tasks: List["asyncio.Task[EndpointOutcome]"] = []
        for endpoint in endpoints:
            items = [item for item in recent if matches(item, endpoint.rules)]
            if not items:
                report.skipped += 1
                continue
            envelope = build_digest_envelope(
                project_id=project.id,
                project_name=project.name,
                since=since,
                until=until,
                items=items,
                max_items=self._max_items,
            )
            tasks.append(self._coordinator.spawn(self._coordinator.deliver_envelope(project.id, endpoint, envelope)))
        return tasks
