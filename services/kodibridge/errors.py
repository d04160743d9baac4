# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Error taxonomy for the bridge.

Every failure that can end a play session maps onto one ErrorKind.  The
transport and supervisor raise the low-level classes (RpcError,
RpcTimeout, TransportClosed, ...); PlaySession catches them at the stage
boundary and re-raises a SessionError carrying the stage's kind, which is
what finally reaches the caller as an ``error`` event.
"""

from enum import Enum


class ErrorKind(str, Enum):
    LAUNCH_FAILED = "LAUNCH_FAILED"
    BAD_ARGS = "BAD_ARGS"
    WS_CONNECT_FAILED = "WS_CONNECT_FAILED"
    WS_CLOSED = "WS_CLOSED"
    PLAY_FAILED = "PLAY_FAILED"
    TRACK_FAILED = "TRACK_FAILED"
    RPC_ERROR = "RPC_ERROR"
    RPC_TIMEOUT = "RPC_TIMEOUT"


def shrink(text, max_len: int = 500) -> str:
    """Trim long remote error texts before they hit logs or the caller."""
    if not text:
        return ""
    text = str(text)
    return text if len(text) <= max_len else text[:max_len] + "…"


class BridgeError(Exception):
    """Base class for all bridge failures."""

    kind: ErrorKind = ErrorKind.WS_CLOSED

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class TransportError(BridgeError):
    """The WebSocket to Kodi failed or could not be opened."""

    kind = ErrorKind.WS_CLOSED


class TransportClosed(TransportError):
    """Raised into pending requests when the transport shuts down."""

    def __init__(self, message: str = "transport closed"):
        super().__init__(message)


class ConnectTimeout(TransportError):
    def __init__(self, timeout: float):
        super().__init__(f"connect timed out after {timeout:.2f}s")
        self.timeout = timeout


class ConnectFailed(BridgeError):
    """The supervisor ran out of time; wraps the last attempt's error."""

    kind = ErrorKind.WS_CONNECT_FAILED

    def __init__(self, attempts: int, last_error: BaseException | None):
        detail = shrink(last_error) if last_error else "no attempt made"
        super().__init__(f"could not connect after {attempts} attempt(s): {detail}")
        self.attempts = attempts
        self.last_error = last_error


class RpcError(BridgeError):
    """Kodi answered a request with an error object."""

    kind = ErrorKind.RPC_ERROR

    def __init__(self, method: str, code, message: str):
        super().__init__(f"{method} failed ({code}): {shrink(message)}")
        self.method = method
        self.code = code
        self.remote_message = message


class RpcTimeout(BridgeError):
    kind = ErrorKind.RPC_TIMEOUT

    def __init__(self, method: str, timeout: float):
        super().__init__(f"{method} timed out after {timeout:.2f}s")
        self.method = method
        self.timeout = timeout


class MalformedReply(BridgeError):
    """Kodi answered, but not with the shape the request expects."""

    kind = ErrorKind.RPC_ERROR


class LaunchError(BridgeError):
    kind = ErrorKind.LAUNCH_FAILED


class SessionError(BridgeError):
    """Terminal failure of a play session.

    ``kind`` is the stage that failed; ``cause`` the underlying error, if any.
    """

    def __init__(self, kind: ErrorKind, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.kind = kind
        self.cause = cause

    @classmethod
    def wrap(cls, kind: ErrorKind, exc: BaseException) -> "SessionError":
        if isinstance(exc, SessionError):
            return exc
        return cls(kind, shrink(str(exc) or exc.__class__.__name__), cause=exc)

    @property
    def remote_code(self):
        if isinstance(self.cause, RpcError):
            return self.cause.code
        return None
