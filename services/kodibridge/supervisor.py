# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Connection supervisor: get a KodiTransport connected within a deadline.

Kodi is usually still starting when the session asks for it, so refused
connections are expected for the first few seconds.  Each attempt gets a
slightly longer timeout and each failure a slightly longer pause, both
capped, until the overall deadline runs out.
"""

import asyncio
import logging

from .errors import BridgeError, ConnectFailed, TransportClosed

logger = logging.getLogger(__name__)

# Milliseconds; the schedule is computed in whole ms and converted at the end
ATTEMPT_TIMEOUT_BASE_MS = 1500
ATTEMPT_TIMEOUT_STEP_MS = 250
ATTEMPT_TIMEOUT_MAX_MS = 4000
BACKOFF_BASE_MS = 150
BACKOFF_STEP_MS = 150
BACKOFF_MAX_MS = 800

# Seconds
ATTEMPT_TIMEOUT_BASE = ATTEMPT_TIMEOUT_BASE_MS / 1000
ATTEMPT_TIMEOUT_MAX = ATTEMPT_TIMEOUT_MAX_MS / 1000


def attempt_timeout(attempt: int) -> float:
    return min(ATTEMPT_TIMEOUT_BASE_MS + attempt * ATTEMPT_TIMEOUT_STEP_MS,
               ATTEMPT_TIMEOUT_MAX_MS) / 1000


def backoff_delay(attempt: int) -> float:
    return min(BACKOFF_BASE_MS + attempt * BACKOFF_STEP_MS, BACKOFF_MAX_MS) / 1000


class ConnectionSupervisor:
    """Retries ``transport.connect_once`` until it succeeds or time runs out.

    *clock* and *sleep* default to the running loop's clock and
    ``asyncio.sleep``; tests pass fakes to run on virtual time.
    """

    def __init__(self, transport, *, clock=None, sleep=None):
        self.transport = transport
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self.attempts = 0

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def connect(self, deadline: float):
        """Return the connected transport or raise ConnectFailed."""
        started = self._now()
        min_attempts = max(1, int(deadline // ATTEMPT_TIMEOUT_MAX))
        last_error: BaseException | None = None
        self.attempts = 0

        while True:
            remaining = deadline - (self._now() - started)
            timeout = min(attempt_timeout(self.attempts), max(remaining, ATTEMPT_TIMEOUT_BASE))
            try:
                await self.transport.connect_once(timeout)
                self.attempts += 1
                logger.info("Kodi connection up after %d attempt(s)", self.attempts)
                return self.transport
            except TransportClosed:
                raise
            except BridgeError as e:
                last_error = e
            self.attempts += 1
            logger.debug("Connect attempt %d failed: %s", self.attempts, last_error)

            if self._exhausted(started, deadline, min_attempts):
                break
            await self._sleep(backoff_delay(self.attempts))
            if self._exhausted(started, deadline, min_attempts):
                break

        logger.warning("Giving up on Kodi after %d attempts (%.1fs): %s",
                       self.attempts, self._now() - started, last_error)
        raise ConnectFailed(self.attempts, last_error)

    def _exhausted(self, started: float, deadline: float, min_attempts: int) -> bool:
        return self._now() - started >= deadline and self.attempts >= min_attempts
