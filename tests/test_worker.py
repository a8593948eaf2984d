"""Unit tests for the in-process background worker and its tasks.

These are pure async tests; no database or aiohttp test server required.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from aiohttp import web

from delivery_service.services.dependencies import RUNTIME_KEY, Runtime
from delivery_service.worker import BackgroundWorker, WorkerTask
from delivery_service.workers.rate_limit_purge import rate_limit_purge


@pytest.mark.asyncio
async def test_worker_runs_tasks():
    """Worker should call each task with the app and a UTC datetime."""
    calls: list[tuple[web.Application, datetime]] = []

    async def task_fn(app: web.Application, now: datetime) -> str | None:
        calls.append((app, now))
        return "ok"

    worker = BackgroundWorker(
        interval_seconds=0.05,
        tasks=[WorkerTask(name="test_task", fn=task_fn)],
    )

    app = web.Application()
    await worker.start(app)
    await asyncio.sleep(0.2)
    await worker.stop(app)

    assert len(calls) >= 2
    for called_app, now in calls:
        assert called_app is app
        assert now.tzinfo is not None


@pytest.mark.asyncio
async def test_worker_task_failure_does_not_stop_others():
    good_count = 0

    async def bad_task(app: web.Application, now: datetime) -> str | None:
        raise RuntimeError("boom")

    async def good_task(app: web.Application, now: datetime) -> str | None:
        nonlocal good_count
        good_count += 1
        return None

    worker = BackgroundWorker(
        interval_seconds=0.05,
        tasks=[WorkerTask(name="bad", fn=bad_task), WorkerTask(name="good", fn=good_task)],
    )

    app = web.Application()
    await worker.start(app)
    await asyncio.sleep(0.2)
    await worker.stop(app)

    assert good_count >= 2, "good_task should keep running despite bad_task failures"


@pytest.mark.asyncio
async def test_worker_stop_without_start_is_noop():
    worker = BackgroundWorker(interval_seconds=0.05, tasks=[])
    await worker.stop(web.Application())


@pytest.mark.asyncio
async def test_run_once_executes_each_task_once():
    task = AsyncMock(return_value=None)
    worker = BackgroundWorker(tasks=[WorkerTask(name="t", fn=task)])
    app = web.Application()

    await worker.run_once(app)

    task.assert_awaited_once()
    assert task.await_args.args[0] is app


@pytest.mark.asyncio
async def test_rate_limit_purge_reports_count(stores):
    app = web.Application()
    app[RUNTIME_KEY] = Runtime(stores=stores)
    stores.rate_limits.purge = AsyncMock(return_value=4)

    summary = await rate_limit_purge(app, datetime.now())

    assert summary == "purged=4"
    stores.rate_limits.purge.assert_awaited_once()


@pytest.mark.asyncio
async def test_rate_limit_purge_quiet_when_nothing_expired(stores):
    app = web.Application()
    app[RUNTIME_KEY] = Runtime(stores=stores)

    assert await rate_limit_purge(app, datetime.now()) is None
