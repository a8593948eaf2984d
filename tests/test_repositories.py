"""SQL-shape tests for the asyncpg repositories over a mocked pool."""
from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from delivery_service.core.exceptions import NotFoundError
from delivery_service.domain.deliveries import DeliveryAttemptCreate, DeliveryLogFilters
from delivery_service.domain.enums import DeliveryStatus, EndpointKind
from delivery_service.repositories import (
    DeliveryLogRepository,
    FeedbackRepository,
    PostgresRateLimitStore,
    ProjectRepository,
)
from delivery_service.repositories.deliveries import _filter_clause


class FakeConnection:
    def __init__(self) -> None:
        self.fetchrow = AsyncMock(return_value=None)
        self.fetch = AsyncMock(return_value=[])
        self.execute = AsyncMock(return_value="UPDATE 1")
        self.fetchval = AsyncMock(return_value=0)
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self) -> None:
        self.conn = FakeConnection()

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def delivery_row(project_id, **overrides):
    row = {
        "id": uuid.uuid4(),
        "created_at": datetime.now(timezone.utc),
        "project_id": project_id,
        "endpoint_id": "g1",
        "kind": "generic",
        "url": "https://hooks.example.com",
        "event": "feedbacks.created",
        "status": "success",
        "status_code": 200,
        "error": None,
        "payload": json.dumps({"event": "feedbacks.created"}),
        "response_time_ms": 12,
        "response_body": "ok",
        "attempt": 1,
    }
    row.update(overrides)
    return row


def test_filter_clause_numbers_placeholders():
    project_id = uuid.uuid4()
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)
    where, args = _filter_clause(project_id, DeliveryLogFilters(event="feedbacks.digest", since=since))
    assert where == "project_id = $1 AND event = $2 AND created_at >= $3"
    assert args == [project_id, "feedbacks.digest", since]


@pytest.mark.asyncio
async def test_delivery_insert_serializes_payload():
    pool = FakePool()
    project_id = uuid.uuid4()
    pool.conn.fetchrow.return_value = delivery_row(project_id)
    repo = DeliveryLogRepository(pool)

    stored = await repo.insert(
        DeliveryAttemptCreate(
            project_id=project_id,
            endpoint_id="g1",
            kind=EndpointKind.GENERIC,
            url="https://hooks.example.com",
            event="feedbacks.created",
            status=DeliveryStatus.SUCCESS,
            status_code=200,
            payload={"event": "feedbacks.created"},
            attempt=1,
        )
    )

    args = pool.conn.fetchrow.await_args.args
    assert "INSERT INTO webhook_deliveries" in args[0]
    assert args[3] == "generic"
    assert args[6] == "success"
    assert json.loads(args[9]) == {"event": "feedbacks.created"}
    assert stored.payload == {"event": "feedbacks.created"}
    assert stored.status is DeliveryStatus.SUCCESS


@pytest.mark.asyncio
async def test_delivery_list_uses_window_count():
    pool = FakePool()
    project_id = uuid.uuid4()
    pool.conn.fetch.return_value = [
        {**delivery_row(project_id), "total_count": 7},
        {**delivery_row(project_id), "total_count": 7},
    ]
    repo = DeliveryLogRepository(pool)

    items, total = await repo.list(project_id, DeliveryLogFilters(endpoint_id="g1"), limit=2, offset=4)

    assert total == 7
    assert len(items) == 2
    query, *args = pool.conn.fetch.await_args.args
    assert "COUNT(*) OVER()" in query
    assert "LIMIT $3 OFFSET $4" in query
    assert args == [project_id, "g1", 2, 4]
    pool.conn.fetchval.assert_not_awaited()


@pytest.mark.asyncio
async def test_delivery_list_past_last_page_counts_separately():
    pool = FakePool()
    pool.conn.fetchval.return_value = 3
    repo = DeliveryLogRepository(pool)

    items, total = await repo.list(uuid.uuid4(), DeliveryLogFilters(), limit=10, offset=100)

    assert items == []
    assert total == 3


@pytest.mark.asyncio
async def test_delivery_get_missing_raises():
    repo = DeliveryLogRepository(FakePool())
    with pytest.raises(NotFoundError):
        await repo.get(uuid.uuid4(), uuid.uuid4())


@pytest.mark.asyncio
async def test_project_json_columns_are_decoded():
    pool = FakePool()
    project_id = uuid.uuid4()
    pool.conn.fetchrow.return_value = {
        "id": project_id,
        "name": "Acme",
        "owner_user_id": None,
        "webhooks": json.dumps({"slack": {"url": "https://hooks.slack.com/x", "enabled": True}}),
        "anti_spam": None,
    }
    project = await ProjectRepository(pool).get(project_id)
    assert project.webhooks["slack"]["enabled"] is True
    assert project.anti_spam == {}


@pytest.mark.asyncio
async def test_project_unknown_api_key():
    with pytest.raises(NotFoundError, match="Invalid API key"):
        await ProjectRepository(FakePool()).get_by_api_key("nope")


@pytest.mark.asyncio
async def test_disable_endpoint_locks_and_writes():
    pool = FakePool()
    project_id = uuid.uuid4()
    pool.conn.fetchrow.return_value = {
        "webhooks": {"generic": {"endpoints": [{"id": "g1", "url": "https://x.test", "enabled": True}]}}
    }

    changed = await ProjectRepository(pool).disable_endpoint(project_id, EndpointKind.GENERIC, "g1")

    assert changed is True
    assert pool.conn.transactions == 1
    assert "FOR UPDATE" in pool.conn.fetchrow.await_args.args[0]
    written = json.loads(pool.conn.execute.await_args.args[2])
    assert written["generic"]["endpoints"][0]["enabled"] is False


@pytest.mark.asyncio
async def test_disable_endpoint_already_disabled_skips_write():
    pool = FakePool()
    pool.conn.fetchrow.return_value = {
        "webhooks": {"generic": {"endpoints": [{"id": "g1", "url": "https://x.test", "enabled": False}]}}
    }
    changed = await ProjectRepository(pool).disable_endpoint(uuid.uuid4(), EndpointKind.GENERIC, "g1")
    assert changed is False
    pool.conn.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_feedback_update_only_touches_known_columns():
    pool = FakePool()
    feedback_id = uuid.uuid4()
    await FeedbackRepository(pool).update(feedback_id, {"is_read": True, "tags": ["a"], "message": "x"})

    query, *args = pool.conn.execute.await_args.args
    assert query == "UPDATE feedback SET is_read = $2, tags = $3::text[] WHERE id = $1"
    assert args == [feedback_id, True, ["a"]]


@pytest.mark.asyncio
async def test_feedback_update_missing_row():
    pool = FakePool()
    pool.conn.execute.return_value = "UPDATE 0"
    with pytest.raises(NotFoundError):
        await FeedbackRepository(pool).update(uuid.uuid4(), {"archived": True})


@pytest.mark.asyncio
async def test_postgres_rate_limit_rejects_at_limit():
    pool = FakePool()
    pool.conn.fetchval.return_value = 2
    store = PostgresRateLimitStore(pool)

    assert await store.hit_if_below("k", 2, 60) is False
    assert pool.conn.execute.await_count == 1  # advisory lock only

    pool.conn.fetchval.return_value = 1
    assert await store.hit_if_below("k", 2, 60) is True
    assert "INSERT INTO rate_limit_hits" in pool.conn.execute.await_args.args[0]


@pytest.mark.asyncio
async def test_postgres_rate_limit_purge_parses_command_tag():
    pool = FakePool()
    pool.conn.execute.return_value = "DELETE 5"
    assert await PostgresRateLimitStore(pool).purge(3600) == 5
