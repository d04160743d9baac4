"""
Shared fixtures for the Kodi bridge test suite.

Two kinds of Kodi stand-ins live here:

* ``FakeKodi`` — a real aiohttp WebSocket server speaking just enough
  JSON-RPC for transport-level tests.
* ``FakeTransport`` — an in-memory KodiTransport replacement with scripted
  replies, used to drive PlaySession without sockets.
"""

import asyncio
import json

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from kodibridge.errors import LaunchError, TransportClosed
from kodibridge.kodi import Notification
from kodibridge.session import PlayRequest, PlaySession

NO_REPLY = object()
CALLER_APP_ID = "com.lampa.tv"


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005):
    """Spin the loop until *predicate()* is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(interval)


def kodi_time(seconds: int) -> dict:
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return {"hours": hours, "minutes": minutes, "seconds": secs, "milliseconds": 0}


# ---------------------------------------------------------------------------
# WebSocket Kodi
# ---------------------------------------------------------------------------


class FakeKodi:
    """Minimal Kodi JSON-RPC WebSocket endpoint.

    ``handlers[method]`` returns a frame body (``{"result": ...}`` or
    ``{"error": {...}}``) or NO_REPLY.  Pings answer "pong" unless
    ``answer_pings`` is False.
    """

    def __init__(self):
        self.handlers = {}
        self.received: list[dict] = []
        self.sockets: list[web.WebSocketResponse] = []
        self.answer_pings = True
        self.host = "127.0.0.1"
        self.port = 0

    async def handle(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            frame = json.loads(msg.data)
            self.received.append(frame)
            body = self._reply(frame)
            if body is not NO_REPLY:
                await ws.send_json({"jsonrpc": "2.0", "id": frame["id"], **body})
        return ws

    def _reply(self, frame):
        method = frame["method"]
        if method == "JSONRPC.Ping":
            return {"result": "pong"} if self.answer_pings else NO_REPLY
        handler = self.handlers.get(method)
        if handler is None:
            return {"error": {"code": -32601, "message": "Method not found."}}
        return handler(frame.get("params"))

    def methods(self) -> list[str]:
        return [f["method"] for f in self.received]

    async def send(self, frame: dict):
        for ws in self.sockets:
            if not ws.closed:
                await ws.send_json(frame)

    async def notify(self, method: str, params: dict | None = None):
        await self.send({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def drop_clients(self):
        for ws in self.sockets:
            await ws.close()


@pytest_asyncio.fixture
async def kodi():
    fake = FakeKodi()
    app = web.Application()
    app.router.add_get("/jsonrpc", fake.handle)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    fake.port = server.port
    yield fake
    await server.close()


# ---------------------------------------------------------------------------
# In-memory collaborators for PlaySession
# ---------------------------------------------------------------------------


class Script:
    """Replies handed out one per call; the last one repeats forever."""

    def __init__(self, *replies):
        self.replies = list(replies)

    def next(self):
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


class FakeTransport:
    """Scripted stand-in for KodiTransport.

    ``replies[method]`` is a value, a callable(params) or a Script.
    Exceptions are raised instead of returned.
    """

    def __init__(self):
        self.replies = {
            "Player.Open": "OK",
            "Player.GetActivePlayers": [{"playerid": 1, "type": "video"}],
            "Player.Seek": {},
            "Player.GetProperties": {"time": kodi_time(10), "totaltime": kodi_time(100),
                                     "speed": 1},
        }
        self.calls: list[tuple[str, dict | None]] = []
        self.closed = False
        self.connect_attempts = 0
        self.silence_timeout = None
        self._on_notification = None
        self._on_close = None

    def __call__(self, host, port, silence_timeout=None):
        # Used directly as the session's transport_factory
        self.host, self.port, self.silence_timeout = host, port, silence_timeout
        return self

    def set_notification_handler(self, callback):
        self._on_notification = callback

    def set_close_handler(self, callback):
        self._on_close = callback

    async def connect_once(self, timeout):
        self.connect_attempts += 1
        if self.closed:
            raise TransportClosed()

    async def request(self, method, params=None, timeout=None):
        if self.closed:
            raise TransportClosed()
        self.calls.append((method, params))
        await asyncio.sleep(0)
        reply = self.replies.get(method)
        if isinstance(reply, Script):
            reply = reply.next()
        if callable(reply):
            reply = reply(params)
        if isinstance(reply, BaseException):
            raise reply
        if self.closed:
            raise TransportClosed()
        return reply

    def close(self):
        self.closed = True

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]

    def notify(self, method: str, params: dict | None = None):
        self._on_notification(Notification(method, params or {}))

    def lose(self, reason: str = "peer went away"):
        self.closed = True
        self._on_close(reason)


class RecordingChannel:
    def __init__(self):
        self.events: list[dict] = []

    async def send(self, event: dict):
        self.events.append(event)

    def types(self) -> list[str]:
        return [e["type"] for e in self.events]

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]


class FakeLauncher:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.launched: list[str] = []
        self.focus_returned: list[str] = []
        self.on_launch = None

    async def launch(self, app_id, params=None):
        if self.on_launch:
            self.on_launch(app_id)
        if self.fail:
            raise LaunchError(f"cannot launch {app_id}")
        self.launched.append(app_id)

    async def return_focus(self, app_id):
        self.focus_returned.append(app_id)

    async def close(self):
        pass


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def make_session(transport, channel, launcher):
    """Build a PlaySession wired to the in-memory fakes."""

    def _make(payload=None, *, interval=0.01, transport_=None, channel_=None,
              launcher_=None, **kwargs):
        request = PlayRequest.from_payload(
            {"url": "file:///movie.mkv", "caller": CALLER_APP_ID, **(payload or {})})
        request.interval = interval
        kwargs.setdefault("discovery_delay", 0.001)
        return PlaySession(
            request,
            channel_ or channel,
            launcher_ or launcher,
            transport_factory=transport_ or transport,
            **kwargs,
        )

    return _make
