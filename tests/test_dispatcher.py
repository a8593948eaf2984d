from __future__ import annotations

import asyncio
import hmac
import json
import uuid
from datetime import datetime, timezone
from hashlib import sha256

import pytest

from delivery_service.domain.enums import DeliveryStatus, DispatchOutcome, EventKind
from delivery_service.domain.feedback import FeedbackEvent
from delivery_service.services.delivery_log import DeliveryLogger
from delivery_service.services.dispatcher import DeliveryOptions, DispatchCoordinator
from delivery_service.services.health import HealthMonitor
from delivery_service.services.payloads import SIGNATURE_HEADER, TIMESTAMP_HEADER, Links
from delivery_service.services.rate_limit import EndpointRateLimiter


def make_event(project_id: uuid.UUID, **overrides) -> FeedbackEvent:
    data = dict(
        id=uuid.uuid4(),
        project_id=project_id,
        project_name="Acme",
        created_at=datetime.now(timezone.utc),
        message="Checkout is broken",
        email="user@example.com",
        type="bug",
        rating=2,
        tags=["checkout"],
    )
    data.update(overrides)
    return FeedbackEvent(**data)


@pytest.mark.asyncio
async def test_only_enabled_endpoint_receives_delivery(coordinator, stores, receiver):
    project = stores.projects.add(
        webhooks={
            "slack": {"url": receiver.url("/slack"), "enabled": True},
            "discord": {"url": receiver.url("/discord"), "enabled": False},
        }
    )
    batch = await coordinator.dispatch_within_budget(
        make_event(project.id), EventKind.CREATED, project.webhooks, 2.0
    )

    assert [o.outcome for o in batch.outcomes()] == [DispatchOutcome.DELIVERED]
    assert [r.path for r in receiver.requests] == ["/slack"]
    payload = json.loads(receiver.requests[0].body)
    attachment = payload["attachments"][0]
    assert attachment["color"] == "#dc2626"
    fields = [f["text"] for f in attachment["blocks"][2]["fields"]]
    assert "*Rating:*\n2/5" in fields

    records = stores.deliveries.records
    assert len(records) == 1
    assert records[0].status is DeliveryStatus.SUCCESS
    assert records[0].event == "feedbacks.created"
    assert records[0].attempt == 1


@pytest.mark.asyncio
async def test_rate_limited_second_event_is_skipped_without_log(coordinator, stores, receiver):
    project = stores.projects.add(
        webhooks={
            "generic": {
                "endpoints": [{"id": "g1", "url": receiver.url(), "enabled": True, "rateLimitPerMin": 1}]
            }
        }
    )
    first, second = await asyncio.gather(
        coordinator.dispatch_within_budget(make_event(project.id), EventKind.CREATED, project.webhooks, 2.0),
        coordinator.dispatch_within_budget(make_event(project.id), EventKind.CREATED, project.webhooks, 2.0),
    )
    outcomes = sorted(o.outcome.value for o in first.outcomes() + second.outcomes())
    assert outcomes == ["delivered", "rate_limited"]
    assert len(receiver.requests) == 1
    assert len(stores.deliveries.records) == 1


@pytest.mark.asyncio
async def test_rating_ceiling_filters_events(coordinator, stores, receiver):
    project = stores.projects.add(
        webhooks={"generic": {"endpoints": [{"url": receiver.url(), "enabled": True, "rules": {"ratingMax": 3}}]}}
    )
    low = await coordinator.dispatch_within_budget(make_event(project.id, rating=3), EventKind.CREATED, project.webhooks, 2.0)
    high = await coordinator.dispatch_within_budget(make_event(project.id, rating=5), EventKind.CREATED, project.webhooks, 2.0)
    unrated = await coordinator.dispatch_within_budget(make_event(project.id, rating=None), EventKind.CREATED, project.webhooks, 2.0)
    assert len(low.tasks) == 1
    assert high.tasks == []
    assert len(unrated.tasks) == 1
    assert len(receiver.requests) == 2


@pytest.mark.asyncio
async def test_redaction_applies_to_wire_not_log(coordinator, stores, receiver):
    project = stores.projects.add(
        webhooks={
            "generic": {
                "endpoints": [{"url": receiver.url(), "enabled": True, "redact": {"email": True}, "secret": "k"}]
            }
        }
    )
    await coordinator.dispatch_within_budget(make_event(project.id), EventKind.CREATED, project.webhooks, 2.0)

    request = receiver.requests[0]
    wire = json.loads(request.body)
    assert wire["feedback"]["email"] is None
    assert stores.deliveries.records[0].payload["feedback"]["email"] == "user@example.com"

    ts = request.headers[TIMESTAMP_HEADER]
    expected = hmac.new(b"k", ts.encode() + b"." + request.body, sha256).hexdigest()
    assert request.headers[SIGNATURE_HEADER] == expected


@pytest.mark.asyncio
async def test_updated_event_only_reaches_subscribers(coordinator, stores, receiver):
    project = stores.projects.add(
        webhooks={
            "generic": {
                "endpoints": [
                    {"id": "a", "url": receiver.url("/a"), "enabled": True},
                    {"id": "b", "url": receiver.url("/b"), "enabled": True, "events": ["created", "updated"]},
                ]
            }
        }
    )
    event = make_event(project.id, changes={"is_read": True})
    await coordinator.dispatch_within_budget(event, EventKind.UPDATED, project.webhooks, 1.5)
    assert [r.path for r in receiver.requests] == ["/b"]
    body = json.loads(receiver.requests[0].body)
    assert body["event"] == "feedbacks.updated"
    assert body["changes"] == {"is_read": True}


@pytest.mark.asyncio
async def test_failures_are_logged_and_endpoint_auto_disabled(coordinator, stores, receiver):
    receiver.default_status = 500
    project = stores.projects.add(
        webhooks={"generic": {"endpoints": [{"id": "g1", "url": receiver.url(), "enabled": True}]}}
    )
    for _ in range(3):
        config = (await stores.projects.get(project.id)).webhooks
        batch = await coordinator.dispatch_within_budget(make_event(project.id), EventKind.CREATED, config, 2.0)
        assert [o.outcome for o in batch.outcomes()] == [DispatchOutcome.FAILED]

    statuses = [r.status for r in stores.deliveries.records]
    assert statuses == [DeliveryStatus.FAILED] * 3
    assert stores.deliveries.records[0].status_code == 500

    config = (await stores.projects.get(project.id)).webhooks
    assert config["generic"]["endpoints"][0]["enabled"] is False
    batch = await coordinator.dispatch_within_budget(make_event(project.id), EventKind.CREATED, config, 2.0)
    assert batch.tasks == []


@pytest.mark.asyncio
async def test_transient_failures_log_only_terminal_success(http_session, stores, receiver):
    engine = DispatchCoordinator(
        http_session,
        delivery_logger=DeliveryLogger(stores.deliveries),
        health=HealthMonitor(stores.deliveries, stores.projects),
        rate_limiter=EndpointRateLimiter(stores.rate_limits),
        links=Links("https://app.feedbacks.test"),
        options=DeliveryOptions(timeout_ms=100, retries=2, backoff_ms=1),
    )
    receiver.delays = [0.5, 0.5]
    project = stores.projects.add(webhooks={"generic": {"url": receiver.url(), "enabled": True}})
    try:
        batch = await engine.dispatch_within_budget(make_event(project.id), EventKind.CREATED, project.webhooks, 5.0)
    finally:
        await engine.aclose()

    assert [o.outcome for o in batch.outcomes()] == [DispatchOutcome.DELIVERED]
    assert len(receiver.requests) == 3
    [record] = stores.deliveries.records
    assert record.status is DeliveryStatus.SUCCESS
    assert record.attempt == 3
    assert record.status_code == 200


@pytest.mark.asyncio
async def test_budget_elapses_but_delivery_completes_in_background(coordinator, stores, receiver):
    receiver.delay = 0.3
    project = stores.projects.add(webhooks={"generic": {"url": receiver.url(), "enabled": True}})

    batch = await coordinator.dispatch_within_budget(make_event(project.id), EventKind.CREATED, project.webhooks, 0.05)
    assert batch.pending == 1
    assert batch.outcomes() == []
    assert coordinator.inflight == 1
    assert stores.deliveries.records == []

    await coordinator.drain()
    assert coordinator.inflight == 0
    assert [o.outcome for o in await batch.wait()] == [DispatchOutcome.DELIVERED]
    assert len(stores.deliveries.records) == 1


@pytest.mark.asyncio
async def test_no_qualifying_endpoints_returns_empty_batch(coordinator, stores):
    project = stores.projects.add(webhooks={"slack": {"url": "https://hooks.slack.test/x", "enabled": False}})
    batch = await coordinator.dispatch_within_budget(make_event(project.id), EventKind.CREATED, project.webhooks, 1.0)
    assert batch.tasks == []
    assert coordinator.inflight == 0
