# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
PlaySession — one playAsync request, from app launch to the end of playback.

    LAUNCHING → CONNECTING → OPENING → PLAYING → STOPPED | ERROR | CANCELLED

The session launches Kodi, connects to its JSON-RPC WebSocket, opens the
URL, finds the active player, seeks to the resume position and then sits in
PLAYING: Kodi notifications arrive on a queue and become caller events,
while a Periodic poller reads time/totaltime/speed and emits progress.

Every event goes to the caller's channel, an object with
``async send(event: dict)``.  Exactly one terminal state is reached.  After
a cancellation (caller gone, or preempted by a newer session) nothing more
is sent and focus is left alone.
"""

import asyncio
import itertools
import logging
import math
from enum import Enum

from .config import cfg
from .errors import (
    BridgeError,
    ErrorKind,
    LaunchError,
    SessionError,
    TransportError,
)
from .kodi import (
    ON_AV_START,
    ON_PAUSE,
    ON_RESUME,
    ON_SEEK,
    ON_STOP,
    PLAYER_GET_ACTIVE,
    PLAYER_GET_PROPERTIES,
    PLAYER_OPEN,
    PLAYER_SEEK,
    PROGRESS_PROPERTIES,
    PlaybackSnapshot,
    seconds_to_kodi_time,
)
from .supervisor import ConnectionSupervisor
from .timers import Periodic
from .transport import KodiTransport

log = logging.getLogger(__name__)

DEFAULT_APP_ID = "org.xbmc.kodi"
DEFAULT_CALLER_APP_ID = "com.lampa.tv"
DEFAULT_KODI_HOST = "127.0.0.1"
DEFAULT_KODI_WS_PORT = 9090

DEFAULT_INTERVAL_MS = 250
MIN_INTERVAL_MS = 100
DEFAULT_TIMEOUT_MS = 20000
MIN_TIMEOUT_MS = 1000
DEFAULT_PING_TIMEOUT_MS = 20000
MIN_PING_TIMEOUT_MS = 1000

DISCOVERY_ATTEMPTS = 14
DISCOVERY_DELAY = 0.12      # seconds between Player.GetActivePlayers polls
TRACK_FAILURE_LIMIT = 3     # consecutive failed progress reads before giving up
RPC_TIMEOUT = 5.0

_session_ids = itertools.count(1)


class SessionState(str, Enum):
    LAUNCHING = "LAUNCHING"
    CONNECTING = "CONNECTING"
    OPENING = "OPENING"
    PLAYING = "PLAYING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = {SessionState.STOPPED, SessionState.ERROR, SessionState.CANCELLED}


def _positive(value, default: float, floor: float = 0) -> float:
    """Numbers or numeric strings > 0 are accepted, anything else is *default*."""
    try:
        n = float(value)
    except (TypeError, ValueError):
        return default
    if not n > 0 or math.isinf(n):
        return default
    return max(n, floor)


class PlayRequest:
    """Parsed playAsync parameters. Durations are held in seconds."""

    def __init__(self, url, *, app_id=DEFAULT_APP_ID, host=DEFAULT_KODI_HOST,
                 port=DEFAULT_KODI_WS_PORT, interval=DEFAULT_INTERVAL_MS / 1000,
                 timeout=DEFAULT_TIMEOUT_MS / 1000,
                 ping_timeout=DEFAULT_PING_TIMEOUT_MS / 1000,
                 name=None, position=None, caller=DEFAULT_CALLER_APP_ID):
        self.url = url
        self.app_id = app_id
        self.host = host
        self.port = port
        self.interval = interval
        self.timeout = timeout
        self.ping_timeout = ping_timeout
        self.name = name
        self.position = position
        self.caller = caller

    @classmethod
    def from_payload(cls, payload: dict | None) -> "PlayRequest":
        """Apply defaults and floors. The url is NOT validated here."""
        p = payload or {}

        position = None
        try:
            pos = float(p["position"])
            if pos >= 0 and math.isfinite(pos):
                position = pos
        except (KeyError, TypeError, ValueError):
            pass

        name = p.get("name")
        return cls(
            p.get("url"),
            app_id=p.get("need") or cfg("kodi", "app_id", default=DEFAULT_APP_ID),
            host=p.get("kodiHost") or cfg("kodi", "host", default=DEFAULT_KODI_HOST),
            port=int(_positive(p.get("kodiWsPort"),
                               cfg("kodi", "ws_port", default=DEFAULT_KODI_WS_PORT))),
            interval=_positive(p.get("intervalMs"), DEFAULT_INTERVAL_MS, MIN_INTERVAL_MS) / 1000,
            timeout=_positive(p.get("timeoutMs"), DEFAULT_TIMEOUT_MS, MIN_TIMEOUT_MS) / 1000,
            ping_timeout=_positive(p.get("pingTimeoutMs"), DEFAULT_PING_TIMEOUT_MS,
                                   MIN_PING_TIMEOUT_MS) / 1000,
            name=name if isinstance(name, str) else None,
            position=position,
            caller=p.get("caller") or cfg("bridge", "caller_app_id",
                                          default=DEFAULT_CALLER_APP_ID),
        )


class PlaySession:
    def __init__(self, request: PlayRequest, channel, launcher, *,
                 transport_factory=KodiTransport,
                 supervisor_factory=ConnectionSupervisor,
                 discovery_attempts: int = DISCOVERY_ATTEMPTS,
                 discovery_delay: float = DISCOVERY_DELAY,
                 track_failure_limit: int = TRACK_FAILURE_LIMIT,
                 rpc_timeout: float = RPC_TIMEOUT):
        self.id = f"s{next(_session_ids)}"
        self.request = request
        self.channel = channel
        self.launcher = launcher
        self.state = SessionState.LAUNCHING
        self.snapshot = PlaybackSnapshot()
        self.player_id = None

        self._transport_factory = transport_factory
        self._supervisor_factory = supervisor_factory
        self.discovery_attempts = discovery_attempts
        self.discovery_delay = discovery_delay
        self.track_failure_limit = track_failure_limit
        self.rpc_timeout = rpc_timeout

        self._transport = None
        self._poller: Periodic | None = None
        # Notifications from the transport, or a SessionError that ends PLAYING
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._poll_failures = 0
        self._lost_reason: str | None = None
        self._cancelled = False
        self._terminal = False

    @property
    def terminal(self) -> bool:
        return self._terminal

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def polling(self) -> bool:
        return self._poller is not None and self._poller.active

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(), name=f"play-session-{self.id}")
        return self._task

    def describe(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "url": self.request.url,
            "playerId": self.player_id,
            **self.snapshot.as_event(),
        }

    # ── Lifecycle ──

    async def run(self):
        log.info("Session %s: play %s", self.id, self.request.url)
        try:
            await self._launch()
            self._validate()
            await self._connect()
            await self._open()
            await self._track()
        except SessionError as e:
            await self._fail(e)
        except asyncio.CancelledError:
            self.stop("task cancelled")
            raise
        finally:
            self._release()

    def stop(self, reason: str = "cancelled"):
        """Cancel synchronously: no more events, timers cleared, transport closed."""
        self._cancelled = True
        if self._enter_terminal(SessionState.CANCELLED):
            log.info("Session %s cancelled (%s)", self.id, reason)
        self._release()
        if self._task is not None and not self._task.done() \
                and self._task is not asyncio.current_task():
            self._task.cancel()

    def _enter_terminal(self, state: SessionState) -> bool:
        if self._terminal:
            return False
        self._terminal = True
        self.state = state
        self._stop_polling()
        return True

    def _set_state(self, state: SessionState):
        log.info("Session %s: %s → %s", self.id, self.state.value, state.value)
        self.state = state

    def _release(self):
        self._stop_polling()
        if self._transport is not None:
            self._transport.close()

    def _stop_polling(self):
        if self._poller is not None:
            self._poller.cancel()

    async def _emit(self, event_type: str, **fields):
        if self._cancelled:
            return
        event = {"type": event_type, **fields}
        try:
            await self.channel.send(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Session %s: could not deliver %s: %s", self.id, event_type, e)

    async def _fail(self, err: SessionError):
        if not self._enter_terminal(SessionState.ERROR):
            return
        log.warning("Session %s failed: %s %s", self.id, err.kind.value, err.message)
        fields = {"message": err.message, "code": err.kind.value, **self.snapshot.as_event()}
        if err.remote_code is not None:
            fields["remoteCode"] = err.remote_code
        await self._emit("error", **fields)
        self._release()
        await self.launcher.return_focus(self.request.caller)

    # ── Transport plumbing ──

    async def _call(self, method: str, params: dict | None = None):
        return await self._transport.request(method, params, timeout=self.rpc_timeout)

    def _on_notification(self, notification):
        # Anything Kodi says while the item is still being opened (OnStop of
        # the replaced item, OnSeek for our own resume seek) is not ours.
        if self._terminal or self.state is not SessionState.PLAYING:
            log.debug("Session %s: dropping %s in %s",
                      self.id, notification.method, self.state.value)
            return
        self._inbox.put_nowait(notification)

    def _on_transport_lost(self, reason: str):
        if self._terminal:
            return
        self._lost_reason = reason
        self._stop_polling()
        self._inbox.put_nowait(
            SessionError(ErrorKind.WS_CLOSED, f"connection to Kodi lost: {reason}"))

    def _stage_error(self, kind: ErrorKind, exc: BaseException) -> SessionError:
        if self._lost_reason is not None and isinstance(exc, TransportError):
            return SessionError(ErrorKind.WS_CLOSED,
                                f"connection to Kodi lost: {self._lost_reason}", cause=exc)
        return SessionError.wrap(kind, exc)

    # ── Stages ──

    async def _launch(self):
        app_id = self.request.app_id
        try:
            await self.launcher.launch(app_id)
        except LaunchError as e:
            raise SessionError.wrap(ErrorKind.LAUNCH_FAILED, e) from e
        await self._emit("launched", appId=app_id)

    def _validate(self):
        # After launch on purpose: Kodi is already starting either way.
        url = self.request.url
        if not isinstance(url, str) or not url.strip():
            raise SessionError(ErrorKind.BAD_ARGS, "Missing or invalid 'url' string")

    async def _connect(self):
        self._set_state(SessionState.CONNECTING)
        req = self.request
        self._transport = self._transport_factory(
            req.host, req.port, silence_timeout=req.ping_timeout)
        self._transport.set_notification_handler(self._on_notification)
        self._transport.set_close_handler(self._on_transport_lost)
        supervisor = self._supervisor_factory(self._transport)
        try:
            await supervisor.connect(req.timeout)
        except BridgeError as e:
            raise SessionError.wrap(ErrorKind.WS_CONNECT_FAILED, e) from e

    async def _open(self):
        self._set_state(SessionState.OPENING)
        start = 0.0
        try:
            await self._call(PLAYER_OPEN, {"item": {"file": self.request.url}})
            player_id = await self._discover_player()
            if player_id is None:
                raise SessionError(
                    ErrorKind.PLAY_FAILED,
                    f"no active player after {self.discovery_attempts} attempts")
            self.player_id = player_id

            if self.request.position is not None:
                await self._call(PLAYER_SEEK, {
                    "playerid": player_id,
                    "value": {"time": seconds_to_kodi_time(self.request.position)},
                })
                start = self.request.position
        except SessionError:
            raise
        except BridgeError as e:
            raise self._stage_error(ErrorKind.PLAY_FAILED, e) from e

        await self._emit("playing", name=self.request.name, position=start)

    async def _discover_player(self):
        for attempt in range(self.discovery_attempts):
            players = await self._call(PLAYER_GET_ACTIVE)
            candidates = [p for p in players or []
                          if isinstance(p, dict) and p.get("playerid") is not None]
            if candidates:
                video = [p for p in candidates if p.get("type") == "video"]
                player_id = (video or candidates)[0]["playerid"]
                log.info("Session %s: active player %s (attempt %d)",
                         self.id, player_id, attempt + 1)
                return player_id
            if attempt < self.discovery_attempts - 1:
                await asyncio.sleep(self.discovery_delay)
        return None

    async def _track(self):
        self._set_state(SessionState.PLAYING)
        self._poller = Periodic(self.request.interval, self._poll_once,
                                name=f"poll-{self.id}")
        self._poller.start()

        while True:
            item = await self._inbox.get()
            if isinstance(item, SessionError):
                raise item
            if await self._handle_notification(item):
                return

    async def _handle_notification(self, notification) -> bool:
        """Map one Kodi notification to caller events. True once stopped."""
        method = notification.method
        if method == ON_AV_START:
            await self._emit("avstart")
        elif method == ON_PAUSE:
            await self._emit("paused")
        elif method == ON_RESUME:
            await self._emit("resumed")
        elif method == ON_SEEK:
            await self._emit("seek", **self.snapshot.as_event())
        elif method == ON_STOP:
            data = notification.params.get("data") or {}
            await self._finish_stopped(bool(data.get("end")))
            return True
        else:
            log.debug("Session %s: ignoring %s", self.id, method)
        return False

    async def _finish_stopped(self, ended: bool):
        if not self._enter_terminal(SessionState.STOPPED):
            return
        snapshot = await self._read_final()
        log.info("Session %s stopped at %.1f/%.1fs (end=%s)",
                 self.id, snapshot.position, snapshot.duration, ended)
        await self._emit("stopped", position=snapshot.position,
                         duration=snapshot.duration, end=ended)
        self._release()
        if not self._cancelled:
            await self.launcher.return_focus(self.request.caller)

    async def _read_properties(self) -> PlaybackSnapshot:
        result = await self._call(PLAYER_GET_PROPERTIES, {
            "playerid": self.player_id, "properties": PROGRESS_PROPERTIES})
        return PlaybackSnapshot.from_properties(result)

    async def _read_final(self) -> PlaybackSnapshot:
        try:
            self.snapshot = await self._read_properties()
        except BridgeError as e:
            log.debug("Session %s: final read failed, keeping last snapshot: %s", self.id, e)
        return self.snapshot

    async def _poll_once(self):
        if self._terminal:
            return
        try:
            snapshot = await self._read_properties()
        except BridgeError as e:
            if self._terminal:
                return
            self._poll_failures += 1
            log.debug("Session %s: progress read failed (%d/%d): %s",
                      self.id, self._poll_failures, self.track_failure_limit, e)
            if self._poll_failures >= self.track_failure_limit:
                self._stop_polling()
                err = self._stage_error(ErrorKind.TRACK_FAILED, e)
                if err.kind is ErrorKind.TRACK_FAILED:
                    err = SessionError(
                        ErrorKind.TRACK_FAILED,
                        f"progress read failed {self._poll_failures} times in a row: {err.message}",
                        cause=e)
                self._inbox.put_nowait(err)
            return

        if self._terminal:
            return
        self._poll_failures = 0
        self.snapshot = snapshot
        await self._emit("progress", **self.snapshot.as_event())
