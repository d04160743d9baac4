"""Tests for kodibridge.service — the aiohttp playAsync/ping/status surface."""

import asyncio
import json

import aiohttp
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from conftest import CALLER_APP_ID, FakeTransport, wait_until
from kodibridge.service import BridgeService
from kodibridge.session import PlaySession, SessionState


class TransportPool:
    """Hands each new session its own FakeTransport."""

    def __init__(self):
        self.transports: list[FakeTransport] = []

    def session_factory(self, request, channel, launcher):
        transport = FakeTransport()
        self.transports.append(transport)
        request.interval = 0.02
        return PlaySession(request, channel, launcher,
                           transport_factory=transport, discovery_delay=0.001)


@pytest_asyncio.fixture
async def bridge(launcher):
    pool = TransportPool()
    service = BridgeService(port=8780, launcher=launcher, session_factory=pool.session_factory)
    client = TestClient(TestServer(service.create_app()))
    await client.start_server()
    yield service, client, pool
    service.registry.stop_current("test teardown")
    await client.close()


async def _subscribe(client, **params):
    ws = await client.ws_connect("/playAsync")
    await ws.send_json({"url": "file:///movie.mkv", "caller": CALLER_APP_ID, **params})
    return ws


async def _collect_until(ws, event_type: str, timeout: float = 2.0) -> list[dict]:
    events = []
    while True:
        msg = await ws.receive(timeout=timeout)
        if msg.type != aiohttp.WSMsgType.TEXT:
            return events
        event = json.loads(msg.data)
        events.append(event)
        if event["type"] == event_type:
            return events


@pytest.mark.asyncio
async def test_ping(bridge):
    service, client, _ = bridge
    resp = await client.get("/ping")
    assert resp.status == 200
    assert await resp.json() == {"status": "ok", "reply": "pong"}
    assert service.registry.current is None


@pytest.mark.asyncio
async def test_post_play_requires_subscription(bridge):
    _, client, pool = bridge
    resp = await client.post("/playAsync", json={"url": "file:///movie.mkv"})
    assert resp.status == 400
    body = await resp.json()
    assert body["status"] == "error"
    assert "subscription" in body["message"]
    assert pool.transports == []


@pytest.mark.asyncio
async def test_status_when_idle(bridge):
    _, client, _ = bridge
    resp = await client.get("/status")
    body = await resp.json()
    assert body["service"] == "kodi-bridge"
    assert body["session"] is None


@pytest.mark.asyncio
async def test_play_subscription_streams_events_until_stopped(bridge, launcher):
    service, client, pool = bridge
    ws = await _subscribe(client, position=120, name="Movie")

    events = await _collect_until(ws, "playing")
    assert [e["type"] for e in events] == ["launched", "playing"]
    assert events[1] == {"type": "playing", "name": "Movie", "position": 120.0}

    await _collect_until(ws, "progress")
    resp = await client.get("/status")
    status = (await resp.json())["session"]
    assert status["state"] == "PLAYING"
    assert status["url"] == "file:///movie.mkv"
    assert status["playerId"] == 1

    pool.transports[0].notify("Player.OnStop", {"data": {"end": True}})
    events = await _collect_until(ws, "stopped")
    assert events[-1]["end"] is True

    msg = await ws.receive(timeout=2)
    assert msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED)
    await wait_until(lambda: service.registry.current is None)
    assert launcher.focus_returned == [CALLER_APP_ID]


@pytest.mark.asyncio
async def test_unsubscribe_cancels_session(bridge, launcher):
    service, client, pool = bridge
    ws = await _subscribe(client)
    await _collect_until(ws, "playing")
    session = service.registry.current

    await ws.close()

    await wait_until(lambda: service.registry.current is None)
    assert session.state is SessionState.CANCELLED
    assert pool.transports[0].closed
    assert not session.polling
    assert launcher.focus_returned == []


@pytest.mark.asyncio
async def test_new_subscription_preempts_old_one(bridge):
    service, client, pool = bridge
    ws1 = await _subscribe(client)
    await _collect_until(ws1, "playing")
    first = service.registry.current

    ws2 = await _subscribe(client, url="file:///other.mkv")
    events = await _collect_until(ws2, "playing")
    assert events[0]["type"] == "launched"

    assert first.state is SessionState.CANCELLED
    assert pool.transports[0].closed
    assert service.registry.current is not first
    assert service.registry.current.request.url == "file:///other.mkv"

    # The preempted subscriber only sees its socket close
    remaining = await _collect_until(ws1, "never")
    assert all(e["type"] == "progress" for e in remaining)
    assert ws1.closed

    await ws2.close()
    await wait_until(lambda: service.registry.current is None)


@pytest.mark.asyncio
async def test_invalid_parameters_frame(bridge):
    service, client, pool = bridge
    ws = await client.ws_connect("/playAsync")
    await ws.send_str("not json")

    event = await ws.receive_json(timeout=2)
    assert event["type"] == "error"
    assert event["code"] == "BAD_ARGS"
    msg = await ws.receive(timeout=2)
    assert msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED)
    assert pool.transports == []
    assert service.registry.current is None


@pytest.mark.asyncio
async def test_shutdown_stops_active_session(bridge):
    service, client, _ = bridge
    ws = await _subscribe(client)
    await _collect_until(ws, "playing")
    session = service.registry.current

    service.registry.stop_current("shutdown")
    await asyncio.sleep(0.02)

    assert session.state is SessionState.CANCELLED
    assert service.registry.current is None
