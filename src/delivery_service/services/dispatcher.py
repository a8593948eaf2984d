"""Fan a domain event out to every qualifying endpoint.

Each endpoint gets its own task running the full pipeline: rate limit,
render, sign, deliver, log and (on failure) health bookkeeping. Callers on
the request path wait for the batch only up to a budget; tasks that are
still running keep going in the background and are tracked until they
finish so they are neither garbage-collected nor lost at shutdown.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping
from uuid import UUID

import structlog
from aiohttp import ClientSession

from delivery_service.core.guard import non_fatal
from delivery_service.domain.enums import DispatchOutcome, EndpointKind, EventKind
from delivery_service.domain.feedback import FeedbackEvent
from delivery_service.domain.webhooks import Endpoint
from delivery_service.services.delivery_log import DeliveryLogger
from delivery_service.services.executor import RESPONSE_BODY_LIMIT, DeliveryResult, deliver
from delivery_service.services.health import HealthMonitor
from delivery_service.services.normalizer import normalize_config
from delivery_service.services.payloads import Links, build_event_envelope, build_request, render
from delivery_service.services.rate_limit import EndpointRateLimiter
from delivery_service.services.rules import RuleSubject, qualifies

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeliveryOptions:
    timeout_ms: int = 4000
    retries: int = 2
    backoff_ms: int = 400
    body_limit: int = RESPONSE_BODY_LIMIT

    @classmethod
    def from_settings(cls, settings: Any) -> "DeliveryOptions":
        return cls(
            timeout_ms=settings.delivery_timeout_ms,
            retries=settings.delivery_retries,
            backoff_ms=settings.delivery_backoff_ms,
            body_limit=settings.delivery_response_body_limit,
        )


@dataclass(frozen=True)
class EndpointOutcome:
    endpoint_id: str
    kind: EndpointKind
    outcome: DispatchOutcome
    status_code: int | None = None


@dataclass
class DispatchBatch:
    tasks: List["asyncio.Task[EndpointOutcome]"] = field(default_factory=list)

    @property
    def pending(self) -> int:
        return sum(1 for task in self.tasks if not task.done())

    def outcomes(self) -> List[EndpointOutcome]:
        """Outcomes of the tasks that have finished so far."""
        return [
            task.result()
            for task in self.tasks
            if task.done() and not task.cancelled() and task.exception() is None
        ]

    async def wait(self) -> List[EndpointOutcome]:
        if self.tasks:
            await asyncio.wait(self.tasks)
        return self.outcomes()


class DispatchCoordinator:
    def __init__(
        self,
        session: ClientSession,
        *,
        delivery_logger: DeliveryLogger,
        health: HealthMonitor,
        rate_limiter: EndpointRateLimiter,
        links: Links,
        options: DeliveryOptions | None = None,
    ):
        self._session = session
        self._log = delivery_logger
        self._health = health
        self._rate_limiter = rate_limiter
        self._links = links
        self._options = options or DeliveryOptions()
        self._inflight: set[asyncio.Task[EndpointOutcome]] = set()

    @property
    def links(self) -> Links:
        return self._links

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def plan(self, subject: RuleSubject, kind: EventKind, endpoints: Iterable[Endpoint]) -> List[Endpoint]:
        return [endpoint for endpoint in endpoints if qualifies(endpoint, subject, kind)]

    async def deliver_envelope(
        self,
        project_id: UUID,
        endpoint: Endpoint,
        envelope: Mapping[str, Any],
        *,
        retries: int | None = None,
        apply_rate_limit: bool = True,
    ) -> EndpointOutcome:
        """Run the per-endpoint pipeline for one canonical envelope."""
        event_name = str(envelope.get("event"))
        async with non_fatal(
            "dispatch.deliver",
            project_id=str(project_id),
            endpoint_id=endpoint.id,
            event=event_name,
        ):
            if apply_rate_limit and not await self._rate_limiter.try_acquire(project_id, endpoint):
                logger.debug(
                    "Endpoint rate limited, skipping",
                    project_id=str(project_id),
                    endpoint_id=endpoint.id,
                    limit=endpoint.rate_limit_per_min,
                )
                return EndpointOutcome(endpoint.id, endpoint.kind, DispatchOutcome.RATE_LIMITED)

            wire = render(endpoint, envelope, self._links)
            body, headers = build_request(endpoint, wire)
            result = await deliver(
                self._session,
                endpoint.url,
                body,
                headers=headers,
                timeout_ms=self._options.timeout_ms,
                retries=self._options.retries if retries is None else retries,
                backoff_ms=self._options.backoff_ms,
                body_limit=self._options.body_limit,
            )
            await self._log.record(
                project_id=project_id,
                endpoint=endpoint,
                event=event_name,
                payload=envelope,
                result=result,
            )
            if not result.ok:
                await self._health.record_failure(project_id, endpoint)
                return EndpointOutcome(
                    endpoint.id, endpoint.kind, DispatchOutcome.FAILED, result.status or None
                )
            return EndpointOutcome(endpoint.id, endpoint.kind, DispatchOutcome.DELIVERED, result.status)
        return EndpointOutcome(endpoint.id, endpoint.kind, DispatchOutcome.ERRORED)

    async def send_once(self, endpoint: Endpoint, wire: Any) -> DeliveryResult:
        """Single unlogged attempt with a ready-made wire payload."""
        body, headers = build_request(endpoint, wire)
        return await deliver(
            self._session,
            endpoint.url,
            body,
            headers=headers,
            timeout_ms=self._options.timeout_ms,
            retries=0,
            body_limit=self._options.body_limit,
        )

    def spawn(self, coro: Any) -> "asyncio.Task[EndpointOutcome]":
        task: asyncio.Task[EndpointOutcome] = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def dispatch(
        self,
        event: FeedbackEvent,
        kind: EventKind,
        config: Mapping[str, Any] | None,
    ) -> DispatchBatch:
        """Start delivery to every qualifying endpoint; does not wait."""
        endpoints = self.plan(event, kind, normalize_config(config))
        if not endpoints:
            logger.debug("No endpoints qualify", project_id=str(event.project_id), event=kind.event_name)
            return DispatchBatch()
        envelope = build_event_envelope(event, kind)
        return DispatchBatch(
            tasks=[self.spawn(self.deliver_envelope(event.project_id, endpoint, envelope)) for endpoint in endpoints]
        )

    async def dispatch_within_budget(
        self,
        event: FeedbackEvent,
        kind: EventKind,
        config: Mapping[str, Any] | None,
        budget_seconds: float,
    ) -> DispatchBatch:
        """Dispatch and wait at most ``budget_seconds``; stragglers keep running."""
        batch = DispatchBatch()
        async with non_fatal("dispatch", project_id=str(event.project_id), event=kind.event_name):
            batch = self.dispatch(event, kind, config)
            if batch.tasks:
                await asyncio.wait(batch.tasks, timeout=budget_seconds)
            if batch.pending:
                logger.info(
                    "Dispatch budget elapsed, continuing in background",
                    project_id=str(event.project_id),
                    event=kind.event_name,
                    pending=batch.pending,
                    budget_seconds=budget_seconds,
                )
        return batch

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for background deliveries to finish."""
        if self._inflight:
            await asyncio.wait(set(self._inflight), timeout=timeout)

    async def aclose(self, timeout: float = 5.0) -> None:
        await self.drain(timeout)
        pending = list(self._inflight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled unfinished deliveries at shutdown", count=len(pending))
