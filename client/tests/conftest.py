"""Shared test fixtures.

The Traccar server is faked with a small FastAPI app reached through
httpx's ASGI transport; the websocket and position source are in-memory.
"""

from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from dataclasses import dataclass, field
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import geotrack.main as main_module
from geotrack.config import AppConfig, ConfigStore, TraccarConfiguration
from geotrack.core.models import PositionFix
from geotrack.core.tracker import TrackingClient
from geotrack.queue.offline_queue import BoundedOfflineQueue
from geotrack.transport.traccar import TraccarClient

TOKEN = "tok-123"


# ---------------------------------------------------------------------------
# Fake Traccar server
# ---------------------------------------------------------------------------

@dataclass
class FakeServer:
    users: dict[str, str] = field(default_factory=lambda: {"admin@example.com": "secret"})
    fail_positions: bool = False
    fail_batches: bool = False
    session_requests: int = 0
    singles: list[dict] = field(default_factory=list)
    batches: list[list[dict]] = field(default_factory=list)
    auth_headers: list[str | None] = field(default_factory=list)
    # When set, batch requests wait on it after signalling batch_started.
    batch_gate: asyncio.Event | None = None
    batch_started: asyncio.Event = field(default_factory=asyncio.Event)


def make_fake_app(server: FakeServer) -> FastAPI:
    app = FastAPI()

    @app.post("/api/session")
    async def session(request: Request) -> JSONResponse:
        server.session_requests += 1
        form = parse_qs((await request.body()).decode())
        email = form.get("email", [""])[0]
        password = form.get("password", [""])[0]
        if server.users.get(email) != password:
            return JSONResponse(content={"error": "unauthorized"}, status_code=401)
        return JSONResponse(content={"id": 1, "email": email, "token": TOKEN})

    @app.post("/api/positions")
    async def positions(request: Request) -> JSONResponse:
        payload = await request.json()
        server.auth_headers.append(request.headers.get("authorization"))
        if isinstance(payload, list):
            if server.batch_gate is not None:
                server.batch_started.set()
                await server.batch_gate.wait()
            if server.fail_batches:
                return JSONResponse(content={"error": "unavailable"}, status_code=503)
            server.batches.append(payload)
        else:
            if server.fail_positions:
                return JSONResponse(content={"error": "unavailable"}, status_code=503)
            server.singles.append(payload)
        return JSONResponse(content={"ok": True})

    return app


@pytest.fixture
def fake_server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def transport(fake_server) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=make_fake_app(fake_server))


# ---------------------------------------------------------------------------
# Fake websocket
# ---------------------------------------------------------------------------

class FakeWebSocket:
    """Yields queued messages, then stays open until dropped or closed."""

    def __init__(self, messages=()) -> None:
        self._messages = list(messages)
        self._ended = asyncio.Event()
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for msg in self._messages:
            yield msg
        await self._ended.wait()

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._ended.set()

    async def close(self) -> None:
        self.closed = True
        self._ended.set()


class FakeConnector:
    def __init__(self) -> None:
        self.sockets: list[FakeWebSocket] = []
        self.urls: list[str] = []
        self.next_messages: list = []

    async def __call__(self, url: str, headers: dict) -> FakeWebSocket:
        self.urls.append(url)
        ws = FakeWebSocket(self.next_messages)
        self.next_messages = []
        self.sockets.append(ws)
        return ws

    @property
    def current(self) -> FakeWebSocket:
        return self.sockets[-1]


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


# ---------------------------------------------------------------------------
# Position source
# ---------------------------------------------------------------------------

class ManualPositionSource:
    """Position source driven by the test."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.watches: dict[int, tuple] = {}
        self.cleared: list[int] = []
        self.once_requests: list[tuple] = []
        self.last_options = None

    def watch(self, on_fix, on_error, options) -> int:
        handle = next(self._ids)
        self.watches[handle] = (on_fix, on_error)
        self.last_options = options
        return handle

    def get_once(self, on_fix, on_error, options) -> None:
        self.once_requests.append((on_fix, on_error))

    def clear_watch(self, handle) -> None:
        self.watches.pop(handle, None)
        self.cleared.append(handle)

    def emit(self, fix: PositionFix) -> None:
        for on_fix, _ in list(self.watches.values()):
            on_fix(fix)

    def fail(self, error) -> None:
        for _, on_error in list(self.watches.values()):
            on_error(error)

    def answer_once(self, fix: PositionFix) -> None:
        requests, self.once_requests = self.once_requests, []
        for on_fix, _ in requests:
            on_fix(fix)


@pytest.fixture
def source() -> ManualPositionSource:
    return ManualPositionSource()


@pytest.fixture
def circuit_file() -> Path:
    return Path(__file__).resolve().parents[2] / "tools" / "simulator" / "circuits" / "lyon_loop.json"


@pytest.fixture
def make_fix():
    def _make(lat=45.0, lon=4.0, t_ms=1_700_000_000_000, speed=None, heading=None, accuracy=5.0):
        return PositionFix(
            lat=lat, lon=lon, accuracy_m=accuracy, timestamp_ms=t_ms,
            speed_mps=speed, heading_deg=heading,
        )
    return _make


# ---------------------------------------------------------------------------
# Client wiring
# ---------------------------------------------------------------------------

@pytest.fixture
def tracker_config() -> TraccarConfiguration:
    return TraccarConfiguration(
        server_url="traccar.test",
        protocol="http",
        port=8082,
        device_id="dev-001",
    )


@pytest.fixture
def offline_queue() -> BoundedOfflineQueue:
    return BoundedOfflineQueue()


@pytest.fixture
async def session(tracker_config, transport, connector, offline_queue):
    client = TraccarClient(
        tracker_config,
        transport=transport,
        queue=offline_queue,
        connect=connector,
        reconnect_delay=0.05,
    )
    yield client
    await client.aclose()


@pytest.fixture
def store(tmp_path) -> ConfigStore:
    return ConfigStore(tmp_path / "store.yaml")


@pytest.fixture
async def tracker(session, source, store):
    client = TrackingClient(session, source, store=store)
    yield client
    client.disconnect()


@pytest.fixture
async def api_client(tracker):
    """HTTP client for the local monitoring API, bound to ``tracker``."""
    main_module._tracker = tracker
    main_module._config = AppConfig()

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=main_module.app), base_url="http://test",
    ) as c:
        yield c

    main_module._tracker = None
    main_module._config = None
