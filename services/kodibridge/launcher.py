# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
App launcher client.

The TV's application manager is reached through a small HTTP webhook
(``launcher.url`` in config) that accepts ``{"id": <app id>, "params": {}}``
and brings that app to the foreground.  The bridge uses it twice per
session: once to start the player, and once to hand focus back to the
calling app when playback ends or fails.
"""

import asyncio
import logging

import aiohttp

from .config import cfg
from .errors import LaunchError

log = logging.getLogger(__name__)

DEFAULT_LAUNCHER_URL = "http://localhost:8781/launch"


class AppLauncher:
    def __init__(self, url: str | None = None, timeout: float | None = None,
                 session: aiohttp.ClientSession | None = None):
        self.url = url or cfg("launcher", "url", default=DEFAULT_LAUNCHER_URL)
        self.timeout = float(timeout or cfg("launcher", "timeout", default=5))
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": "KodiBridge-Launcher/1.0"})
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def launch(self, app_id: str, params: dict | None = None):
        """Bring *app_id* to the foreground. Raises LaunchError on failure."""
        session = await self._get_session()
        try:
            async with session.post(
                self.url,
                json={"id": app_id, "params": params or {}},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    raise LaunchError(f"launcher returned HTTP {resp.status} for {app_id}")
                log.info("Launched %s", app_id)
        except asyncio.TimeoutError:
            raise LaunchError(f"launch of {app_id} timed out") from None
        except aiohttp.ClientError as e:
            raise LaunchError(f"launch of {app_id} failed: {e}") from e

    async def return_focus(self, app_id: str | None):
        """Best-effort: put the calling app back in front. Never raises."""
        if not app_id:
            return
        try:
            await self.launch(app_id)
        except LaunchError as e:
            log.warning("Could not return focus to %s: %s", app_id, e)
