from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest
from aiohttp import ClientSession, web

from delivery_service.main import create_app
from delivery_service.services.delivery_log import DeliveryLogger
from delivery_service.services.dispatcher import DeliveryOptions, DispatchCoordinator
from delivery_service.services.health import HealthMonitor
from delivery_service.services.payloads import Links
from delivery_service.services.rate_limit import EndpointRateLimiter

from tests.fakes import make_stores


@dataclass
class ReceivedRequest:
    path: str
    headers: dict[str, str]
    body: bytes


@dataclass
class Receiver:
    """Local webhook target; replies with ``statuses`` (after ``delays``) in order, then the defaults."""

    base_url: str = ""
    statuses: list[int] = field(default_factory=list)
    default_status: int = 200
    delay: float = 0.0
    delays: list[float] = field(default_factory=list)
    reply: str = "ok"
    requests: list[ReceivedRequest] = field(default_factory=list)

    def url(self, path: str = "/hook") -> str:
        return f"{self.base_url}{path}"

    async def handle(self, request: web.Request) -> web.Response:
        self.requests.append(
            ReceivedRequest(request.path, dict(request.headers), await request.read())
        )
        delay = self.delays.pop(0) if self.delays else self.delay
        if delay:
            await asyncio.sleep(delay)
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return web.Response(status=status, text=self.reply)


@pytest.fixture
async def receiver():
    target = Receiver()
    app = web.Application()
    app.router.add_post("/{tail:.*}", target.handle)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
    target.base_url = f"http://127.0.0.1:{port}"
    try:
        yield target
    finally:
        await runner.cleanup()


@pytest.fixture
def stores():
    return make_stores()


@pytest.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


@pytest.fixture
def fast_options():
    return DeliveryOptions(timeout_ms=1000, retries=2, backoff_ms=10)


@pytest.fixture
async def coordinator(http_session, stores, fast_options):
    engine = DispatchCoordinator(
        http_session,
        delivery_logger=DeliveryLogger(stores.deliveries),
        health=HealthMonitor(stores.deliveries, stores.projects, threshold=3),
        rate_limiter=EndpointRateLimiter(stores.rate_limits, window_seconds=60),
        links=Links("https://app.feedbacks.test"),
        options=fast_options,
    )
    yield engine
    await engine.aclose()


@pytest.fixture
async def service_client(aiohttp_client, stores):
    """API client over in-memory stores."""
    app = create_app(stores, run_workers=False)
    return await aiohttp_client(app)
