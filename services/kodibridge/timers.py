# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""Cancellable periodic tasks for asyncio services.

Heartbeat, liveness watchdog and progress polling all run through
Periodic so that stopping a session is a plain, synchronous cancel().

Usage:
    poller = Periodic(0.25, self._poll_once, name="poll")
    poller.start()
    ...
    poller.cancel()
"""

import asyncio
import inspect
import logging

logger = logging.getLogger(__name__)


class Periodic:
    """Call *callback* every *interval* seconds until cancelled.

    The callback may be sync or async.  An async callback is awaited before
    the next sleep starts, so ticks never overlap.
    """

    def __init__(self, interval: float, callback, name: str = "periodic"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.active:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    def cancel(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _loop(self):
        logger.debug("%s started (interval=%.3fs)", self.name, self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s callback failed", self.name)
