# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Shared configuration loader for the Kodi bridge service.

Loads a single JSON config file per TV.  Search order:
  1. /etc/kodibridge/config.json   (deployed with the service)
  2. config.json                   (CWD — handy for local dev)
  3. ../../config/default.json     (repo fallback)

Per-request parameters sent to playAsync always win over these values;
the config only moves the defaults.

Usage:
    from kodibridge.config import cfg

    kodi_host = cfg("kodi", "host", default="127.0.0.1")
    ws_port   = cfg("kodi", "ws_port", default=9090)
    launcher  = cfg("launcher")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/kodibridge/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    launcher = config.get("launcher") or {}
    if not launcher.get("url"):
        logger.warning("Config %s: missing launcher.url — player app cannot be launched", path)
    kodi = config.get("kodi") or {}
    port = kodi.get("ws_port")
    if port is not None and not isinstance(port, int):
        logger.warning("Config %s: kodi.ws_port should be an integer, got %r", path, port)
    bridge = config.get("bridge") or {}
    if not bridge.get("caller_app_id"):
        logger.warning("Config %s: missing bridge.caller_app_id — focus cannot be returned", path)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _SEARCH_PATHS:
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("bridge")                     → config["bridge"]
    cfg("kodi", "host")               → config["kodi"]["host"]
    cfg("kodi", "ws_port", default=9090) → config["kodi"]["ws_port"] or 9090
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
