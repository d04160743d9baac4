# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Kodi JSON-RPC transport over a persistent WebSocket.

One KodiTransport is one physical connection.  Requests are correlated with
responses by a per-connection, monotonically increasing id; frames without
an id are notifications and go to the single registered handler in arrival
order.  A heartbeat pings Kodi every few seconds and a watchdog tears the
connection down when nothing has been heard for ``silence_timeout``.

Usage:
    transport = KodiTransport("127.0.0.1", 9090, silence_timeout=20)
    transport.set_notification_handler(on_notification)   # sync callable
    transport.set_close_handler(on_lost)                  # sync callable
    await transport.connect_once(timeout=1.5)
    players = await transport.request("Player.GetActivePlayers", timeout=3)
    transport.close()
"""

import asyncio
import json
import logging

import websockets

from .errors import (
    BridgeError,
    ConnectTimeout,
    RpcError,
    RpcTimeout,
    TransportClosed,
    TransportError,
)
from .kodi import JSONRPC_VERSION, PING, Notification
from .timers import Periodic

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 5.0   # seconds between JSONRPC.Ping probes
WATCHDOG_INTERVAL = 1.0    # seconds between silence checks
DEFAULT_REQUEST_TIMEOUT = 5.0


class KodiTransport:
    """Duplex JSON-RPC client for Kodi's WebSocket endpoint."""

    def __init__(self, host: str, port: int, *,
                 silence_timeout: float = 20.0,
                 heartbeat_interval: float = HEARTBEAT_INTERVAL,
                 watchdog_interval: float = WATCHDOG_INTERVAL):
        self.host = host
        self.port = port
        self.url = f"ws://{host}:{port}/jsonrpc"
        self.silence_timeout = silence_timeout
        self.heartbeat_interval = heartbeat_interval

        self._ws = None
        self._next_id = 0
        # id -> (method, future)
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._reader_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None
        self._heartbeat = Periodic(heartbeat_interval, self._send_ping, name="kodi-heartbeat")
        self._watchdog = Periodic(watchdog_interval, self._check_silence, name="kodi-watchdog")
        self._last_inbound = 0.0
        self._notification_handler = None
        self._close_handler = None
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def set_notification_handler(self, callback):
        """Register the notification sink.

        Callback signature: def handler(notification: Notification) -> None
        """
        self._notification_handler = callback

    def set_close_handler(self, callback):
        """Register a callback fired once on abnormal close.

        Callback signature: def handler(reason: str) -> None
        """
        self._close_handler = callback

    # ── Connection ──

    async def connect_once(self, timeout: float):
        """Open the WebSocket, raising ConnectTimeout or TransportError."""
        if self._closed:
            raise TransportClosed()
        if self._ws is not None:
            return

        try:
            ws = await websockets.connect(
                self.url,
                open_timeout=timeout,
                ping_interval=None,   # liveness is our own JSONRPC.Ping heartbeat
                close_timeout=1,
                max_size=None,
            )
        except (asyncio.TimeoutError, TimeoutError):
            raise ConnectTimeout(timeout) from None
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise TransportError(f"connect to {self.url} failed: {e}") from e

        if self._closed:
            # close() raced with the handshake
            await ws.close()
            raise TransportClosed()

        self._ws = ws
        self._last_inbound = asyncio.get_running_loop().time()
        self._reader_task = asyncio.create_task(self._read_loop(ws), name="kodi-reader")
        self._heartbeat.start()
        self._watchdog.start()
        logger.info("Connected to Kodi at %s", self.url)

    def close(self):
        """Stop timers, fail pending requests, release the socket. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._heartbeat.cancel()
        self._watchdog.cancel()

        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
        self._reader_task = None

        pending = list(self._pending.values())
        self._pending.clear()
        for _method, fut in pending:
            if not fut.done():
                fut.set_exception(TransportClosed())

        if self._ws is not None:
            self._close_task = asyncio.ensure_future(self._ws.close())
            self._ws = None
        logger.debug("Transport to %s closed (%d pending failed)", self.url, len(pending))

    async def aclose(self):
        """close() and wait for the socket close handshake to finish."""
        self.close()
        if self._close_task is not None:
            try:
                await self._close_task
            except Exception as e:
                logger.debug("Socket close error: %s", e)

    def _teardown(self, reason: str):
        """Abnormal close: shut down, then tell the owner once."""
        if self._closed:
            return
        logger.warning("Kodi connection lost: %s", reason)
        self.close()
        if self._close_handler:
            try:
                self._close_handler(reason)
            except Exception:
                logger.exception("Close handler failed")

    # ── Requests ──

    async def request(self, method: str, params: dict | None = None,
                      timeout: float = DEFAULT_REQUEST_TIMEOUT):
        """Send one request and return Kodi's ``result`` payload.

        Raises RpcError on an error response, RpcTimeout when no response
        arrives within *timeout*, TransportClosed when the connection goes away.
        """
        if self._closed or self._ws is None:
            raise TransportClosed()

        self._next_id += 1
        req_id = self._next_id
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = (method, fut)
        frame = {
            "jsonrpc": JSONRPC_VERSION,
            "id": req_id,
            "method": method,
            "params": params or {},
        }
        try:
            await self._ws.send(json.dumps(frame))
            logger.debug("→ #%d %s", req_id, method)
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            raise RpcTimeout(method, timeout) from None
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportClosed(f"connection closed during {method}: {e}") from e
        finally:
            self._pending.pop(req_id, None)

    # ── Inbound ──

    async def _read_loop(self, ws):
        reason = "peer closed the connection"
        try:
            async for message in ws:
                self._last_inbound = asyncio.get_running_loop().time()
                try:
                    frame = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Kodi: %s", message[:200])
                    continue
                if isinstance(frame, dict):
                    self._dispatch(frame)
                else:
                    logger.debug("Ignoring non-object frame from Kodi")
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"connection closed ({e})"
        except Exception as e:
            logger.error("Reader error: %s", e)
            reason = f"reader error ({e})"
        self._teardown(reason)

    def _dispatch(self, frame: dict):
        req_id = frame.get("id")
        if req_id is not None and ("result" in frame or "error" in frame):
            entry = self._pending.pop(req_id, None)
            if entry is None:
                logger.debug("Late or unknown response #%s dropped", req_id)
                return
            method, fut = entry
            if fut.done():
                return
            if frame.get("error") is not None:
                err = frame["error"] if isinstance(frame["error"], dict) else {}
                fut.set_exception(RpcError(method, err.get("code"), err.get("message", "")))
            else:
                fut.set_result(frame.get("result"))
            return

        method = frame.get("method")
        if method:
            if not self._notification_handler:
                return
            try:
                self._notification_handler(Notification(method, frame.get("params") or {}))
            except Exception:
                logger.exception("Notification handler failed for %s", method)

    # ── Liveness ──

    async def _send_ping(self):
        try:
            result = await self.request(PING, timeout=self.heartbeat_interval)
            if result != "pong":
                logger.debug("Unexpected ping reply: %r", result)
        except BridgeError as e:
            logger.debug("Heartbeat failed: %s", e)

    def _check_silence(self):
        silent = asyncio.get_running_loop().time() - self._last_inbound
        if silent > self.silence_timeout:
            self._teardown(f"no traffic for {silent:.1f}s")
