"""Periodic in-process background worker.

Usage::

    worker = BackgroundWorker(
        name="maintenance",
        interval_seconds=60.0,
        tasks=[WorkerTask(name="rate_limit_purge", fn=rate_limit_purge)],
    )
    app.on_startup.append(worker.start)
    app.on_cleanup.append(worker.stop)
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

# Receives the application and the current UTC time; returns an optional
# summary that is logged when non-empty.
TaskFn = Callable[[web.Application, datetime], Awaitable[str | None]]


@dataclass
class WorkerTask:
    name: str
    fn: TaskFn


@dataclass
class BackgroundWorker:
    """Runs its tasks every ``interval_seconds``; one failing task does not stop the rest."""

    name: str = "background_worker"
    interval_seconds: float = 60.0
    tasks: Sequence[WorkerTask] = field(default_factory=list)

    @property
    def _app_key(self) -> str:
        return f"__worker_{self.name}__"

    async def start(self, app: web.Application) -> None:
        app[self._app_key] = asyncio.create_task(self._loop(app))

    async def stop(self, app: web.Application) -> None:
        task = app.get(self._app_key)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_once(self, app: web.Application, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        for task in self.tasks:
            try:
                summary = await task.fn(app, now)
            except Exception:
                logger.exception("background_task failed", worker=self.name, task=task.name)
                continue
            if summary:
                logger.info("background_task completed", worker=self.name, task=task.name, summary=summary)

    async def _loop(self, app: web.Application) -> None:
        logger.info(
            "background_worker started",
            worker=self.name,
            interval_seconds=self.interval_seconds,
            tasks=[t.name for t in self.tasks],
        )
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once(app)
        except asyncio.CancelledError:
            logger.info("background_worker stopped", worker=self.name)
            raise
