# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
BridgeService — the HTTP + WebSocket surface of the Kodi bridge.

Routes:
  GET  /playAsync  — WebSocket subscription.  The first text frame carries
                     the play parameters as JSON; every session event is
                     pushed back as a JSON frame.  Closing the socket
                     unsubscribes and cancels the session.
  POST /playAsync  — refused: playAsync needs a standing subscription
  GET  /ping       — health check, fixed reply, no side effects
  GET  /status     — port and the active session, if any

Only one session runs at a time; a new subscription preempts the old one
through the SessionRegistry.
"""

import asyncio
import json
import logging
import signal

from aiohttp import WSMsgType, web

from .config import cfg
from .launcher import AppLauncher
from .registry import SessionRegistry
from .session import PlayRequest, PlaySession

log = logging.getLogger(__name__)

DEFAULT_PORT = 8780
PARAMS_TIMEOUT = 10  # seconds to wait for the parameter frame


class WebSocketChannel:
    """Caller channel backed by an aiohttp WebSocket."""

    def __init__(self, ws: web.WebSocketResponse):
        self.ws = ws

    async def send(self, event: dict):
        if self.ws.closed:
            raise ConnectionResetError("caller unsubscribed")
        await self.ws.send_json(event)


class BridgeService:
    id = "kodi-bridge"
    name = "Kodi Bridge"

    def __init__(self, port: int | None = None, launcher: AppLauncher | None = None,
                 session_factory=PlaySession):
        self.port = port or int(cfg("bridge", "port", default=DEFAULT_PORT))
        self.launcher = launcher or AppLauncher()
        self.registry = SessionRegistry()
        self._session_factory = session_factory
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/playAsync", self._handle_play_ws)
        app.router.add_post("/playAsync", self._handle_play_post)
        app.router.add_get("/ping", self._handle_ping)
        app.router.add_get("/status", self._handle_status)
        app.router.add_options("/playAsync", self._handle_cors)
        return app

    # ── Lifecycle ──

    async def start(self):
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()
        log.info("%s: HTTP + WebSocket on port %d", self.name, self.port)

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        await self.start()
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        self.registry.stop_current("shutdown")
        await self.launcher.close()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        log.info("%s stopped", self.name)

    # ── Route handlers ──

    def _cors_headers(self):
        return {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
        }

    async def _handle_cors(self, request: web.Request) -> web.Response:
        return web.Response(headers=self._cors_headers())

    async def _handle_ping(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "reply": "pong"},
                                 headers=self._cors_headers())

    async def _handle_status(self, request: web.Request) -> web.Response:
        current = self.registry.current
        return web.json_response({
            "service": self.id,
            "port": self.port,
            "session": current.describe() if current else None,
        }, headers=self._cors_headers())

    async def _handle_play_post(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"status": "error", "message": "playAsync requires a subscription"},
            status=400,
            headers=self._cors_headers())

    async def _handle_play_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        payload = await self._receive_params(ws)
        if payload is None:
            await ws.close()
            return ws

        session = self._session_factory(
            PlayRequest.from_payload(payload), WebSocketChannel(ws), self.launcher)
        self.registry.preempt_and_set(session)
        task = session.start()
        watcher = asyncio.create_task(self._wait_unsubscribe(ws))

        try:
            await asyncio.wait({task, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if not task.done():
                session.stop("unsubscribed")
            await asyncio.wait({task})
        finally:
            # Handler cancelled by aiohttp: still tear the session down
            if not task.done():
                session.stop("unsubscribed")
            watcher.cancel()
            self.registry.clear_if_current(session)

        if not task.cancelled() and task.exception() is not None:
            log.error("Session %s crashed: %s", session.id, task.exception())
        if not ws.closed:
            await ws.close()
        return ws

    async def _receive_params(self, ws: web.WebSocketResponse) -> dict | None:
        try:
            msg = await ws.receive(timeout=PARAMS_TIMEOUT)
        except asyncio.TimeoutError:
            log.warning("playAsync subscriber sent no parameters")
            return None
        if msg.type != WSMsgType.TEXT:
            return None
        try:
            payload = json.loads(msg.data)
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            await ws.send_json({"type": "error", "code": "BAD_ARGS",
                                "message": "parameters must be a JSON object"})
            return None
        return payload

    async def _wait_unsubscribe(self, ws: web.WebSocketResponse):
        async for _msg in ws:
            pass  # nothing is expected from the caller after the parameters


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(BridgeService().run())
