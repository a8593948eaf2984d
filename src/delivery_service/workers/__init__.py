"""Background workers for the delivery service.

Each worker module exports one async task compatible with
:class:`delivery_service.worker.WorkerTask`.
"""
from __future__ import annotations

from delivery_service.settings import settings
from delivery_service.worker import BackgroundWorker, WorkerTask
from delivery_service.workers.digest import hourly_digest
from delivery_service.workers.rate_limit_purge import rate_limit_purge

maintenance_worker = BackgroundWorker(
    name="maintenance",
    interval_seconds=settings.worker_interval_seconds,
    tasks=[WorkerTask(name="rate_limit_purge", fn=rate_limit_purge)],
)

digest_worker = BackgroundWorker(
    name="digest",
    interval_seconds=settings.digest_interval_seconds,
    tasks=[WorkerTask(name="hourly_digest", fn=hourly_digest)],
)

__all__ = [
    "digest_worker",
    "maintenance_worker",
]
