# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Kodi JSON-RPC vocabulary: method names, notification names and the
time/snapshot helpers shared by the transport and the play session.

Kodi reports times as ``{"hours", "minutes", "seconds", "milliseconds"}``
objects; everything the bridge emits is plain float seconds.
"""

from typing import NamedTuple

from .errors import MalformedReply, shrink

JSONRPC_VERSION = "2.0"

# Requests
PING = "JSONRPC.Ping"
PLAYER_OPEN = "Player.Open"
PLAYER_GET_ACTIVE = "Player.GetActivePlayers"
PLAYER_SEEK = "Player.Seek"
PLAYER_GET_PROPERTIES = "Player.GetProperties"

# Notifications
ON_AV_START = "Player.OnAVStart"
ON_PAUSE = "Player.OnPause"
ON_RESUME = "Player.OnResume"
ON_SEEK = "Player.OnSeek"
ON_STOP = "Player.OnStop"

PROGRESS_PROPERTIES = ["time", "totaltime", "speed"]


def kodi_time_to_seconds(value) -> float:
    """{hours:1, minutes:2, seconds:3, milliseconds:500} → 3723.5; None → 0."""
    if not value:
        return 0.0
    return (
        (value.get("hours") or 0) * 3600
        + (value.get("minutes") or 0) * 60
        + (value.get("seconds") or 0)
        + (value.get("milliseconds") or 0) / 1000
    )


def seconds_to_kodi_time(seconds: float) -> dict:
    total_ms = int(round(max(seconds, 0) * 1000))
    hours, rest = divmod(total_ms, 3600 * 1000)
    minutes, rest = divmod(rest, 60 * 1000)
    secs, ms = divmod(rest, 1000)
    return {"hours": hours, "minutes": minutes, "seconds": secs, "milliseconds": ms}


class PlaybackSnapshot(NamedTuple):
    """Last successfully read position/duration/speed, in seconds."""

    position: float = 0.0
    duration: float = 0.0
    speed: float = 0.0

    @classmethod
    def from_properties(cls, result) -> "PlaybackSnapshot":
        """Build from a Player.GetProperties result; MalformedReply if it doesn't fit."""
        result = result or {}
        if not isinstance(result, dict):
            raise MalformedReply(f"{PLAYER_GET_PROPERTIES} returned {shrink(repr(result))}")
        for key in ("time", "totaltime"):
            if result.get(key) is not None and not isinstance(result[key], dict):
                raise MalformedReply(
                    f"{PLAYER_GET_PROPERTIES} {key} is {shrink(repr(result[key]))}")
        try:
            return cls(
                position=kodi_time_to_seconds(result.get("time")),
                duration=kodi_time_to_seconds(result.get("totaltime")),
                speed=abs(float(result.get("speed") or 0)),
            )
        except (TypeError, ValueError) as e:
            raise MalformedReply(f"{PLAYER_GET_PROPERTIES} returned bad values: {e}") from e

    def as_event(self) -> dict:
        return {"position": self.position, "duration": self.duration, "speed": self.speed}


class Notification(NamedTuple):
    """Unsolicited server event: a method name plus its params object."""

    method: str
    params: dict
