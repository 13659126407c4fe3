"""Test fixtures — in-memory transports and change feeds, no Postgres or Redis.

Learn: Testing pattern for the realtime core:

1. FakeTransport stands in for a WebSocket. It records every frame the
   server writes, can be told to fail writes, and feeds inbound frames
   from a queue so gateway.serve() can run as a background task.
2. FakeChangeFeed stands in for a PG LISTEN connection. Tests push raw
   change records into it, or make it fail to exercise resubscription.
3. The `client` fixture talks to the FastAPI app over httpx's
   ASGITransport with a running gateway on app.state and auth overridden.

Integrations are switched off through env vars *before* the package is
imported, since `settings` is read once at import time.
"""

import asyncio
import json
import os

os.environ.setdefault("COMPLIANCE_RT_CHANGE_FEED_ENABLED", "false")
os.environ.setdefault("COMPLIANCE_RT_REDIS_RELAY_ENABLED", "false")
os.environ.setdefault("COMPLIANCE_RT_ENVIRONMENT", "development")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketDisconnect

from compliance_realtime.realtime.connection import Connection, Transport, new_connection_id
from compliance_realtime.realtime.feeds import ChangeFeed, ChangeFeedError
from compliance_realtime.realtime.gateway import RealTimeGateway


# ─── Fakes ───────────────────────────────────────────────


class FakeTransport(Transport):
    """Records outbound frames; inbound frames come from a queue."""

    def __init__(self, *, fail_sends: bool = False, send_delay: float = 0.0):
        self.sent: list[str] = []
        self.fail_sends = fail_sends
        self.send_delay = send_delay
        self.close_calls: list[tuple[int, str]] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    async def send_text(self, text: str) -> None:
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.fail_sends:
            raise ConnectionResetError("socket write failed")
        self.sent.append(text)

    async def receive(self) -> str | bytes:
        item = await self.inbound.get()
        if isinstance(item, int):
            raise WebSocketDisconnect(code=item)
        return item

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls.append((code, reason))
        self._open = False
        # Unblock a pending receive the way a real socket would
        self.inbound.put_nowait(code)

    # Test helpers

    def client_sends(self, frame) -> None:
        if isinstance(frame, (str, bytes)):
            self.inbound.put_nowait(frame)
        else:
            self.inbound.put_nowait(json.dumps(frame))

    def client_disconnects(self, code: int = 1000) -> None:
        self._open = False
        self.inbound.put_nowait(code)

    @property
    def frames(self) -> list[dict]:
        return [json.loads(t) for t in self.sent]

    def frames_of(self, type_: str) -> list[dict]:
        return [f for f in self.frames if f["type"] == type_]


class FakeChangeFeed(ChangeFeed):
    """In-memory change feed. push() records, fail() breaks the stream."""

    _FAIL = object()

    def __init__(self, name: str = "fake", *, fail_opens: int = 0):
        self.name = name
        self.fail_opens = fail_opens
        self.open_count = 0
        self.close_count = 0
        self.is_open = False
        self._queue: asyncio.Queue = asyncio.Queue()

    async def open(self) -> None:
        self.open_count += 1
        if self.open_count <= self.fail_opens:
            raise ConnectionRefusedError("database unavailable")
        self.is_open = True

    async def changes(self):
        while True:
            item = await self._queue.get()
            if item is self._FAIL:
                raise ChangeFeedError(f"{self.name} connection lost")
            yield item

    async def close(self) -> None:
        self.close_count += 1
        self.is_open = False

    def push(self, record) -> None:
        self._queue.put_nowait(record)

    def fail(self) -> None:
        self._queue.put_nowait(self._FAIL)


async def settle(rounds: int = 5) -> None:
    """Let background tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Poll until predicate() is true (or fail the test)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_connection(registry, project_id=None, **transport_kwargs) -> Connection:
    """Register a connection over a FakeTransport, optionally scoped."""
    conn = Connection(
        id=new_connection_id(),
        transport=FakeTransport(**transport_kwargs),
        project_id=project_id,
    )
    registry.register(conn)
    return conn


# ─── Fixtures ────────────────────────────────────────────


@pytest_asyncio.fixture()
async def gateway():
    """A started gateway with no feeds and a long ping interval.

    Tests drive liveness by calling gateway.monitor.sweep() directly.
    """
    gw = RealTimeGateway(ping_interval=3600, send_timeout=0.5, max_send_failures=3)
    await gw.start()
    try:
        yield gw
    finally:
        await gw.stop()


@pytest.fixture()
def app():
    from compliance_realtime.main import create_app

    return create_app(feeds={})


@pytest_asyncio.fixture()
async def client(app, gateway):
    """HTTP client with a running gateway and auth overridden.

    Learn: ASGITransport doesn't run the lifespan, so the gateway fixture
    is put on app.state by hand — the same slot the lifespan fills.
    """
    from compliance_realtime.auth.dependencies import CurrentIdentity, get_current_user

    def override_get_current_user():
        return CurrentIdentity(user_id="user-1")

    app.state.gateway = gateway
    app.dependency_overrides[get_current_user] = override_get_current_user

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def unauthenticated_client(app, gateway):
    """HTTP client WITHOUT the auth override — exercises real JWT checks."""
    app.state.gateway = gateway
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
