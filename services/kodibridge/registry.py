# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""Single-slot registry of the active play session.

Only one session may drive Kodi at a time.  A new request stops the
previous session before it is installed, so the old session's poller and
socket are gone before the new one makes its first network call.
"""

import logging

log = logging.getLogger(__name__)


class SessionRegistry:
    """Holds at most one active session."""

    def __init__(self):
        self._current = None

    @property
    def current(self):
        return self._current

    def preempt_and_set(self, session):
        """Stop whichever session is active, then install *session*.

        Runs without yielding to the event loop; ``stop()`` must cancel
        synchronously.
        """
        prev = self._current
        if prev is not None and prev is not session:
            log.info("Preempting session %s for %s", prev.id, session.id)
            prev.stop("preempted")
        self._current = session

    def clear_if_current(self, session) -> bool:
        """Drop *session* from the slot unless a newer one replaced it."""
        if self._current is session:
            self._current = None
            return True
        return False

    def stop_current(self, reason: str = "shutdown"):
        if self._current is not None:
            self._current.stop(reason)
            self._current = None
