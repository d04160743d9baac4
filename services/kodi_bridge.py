#!/usr/bin/env python3
# Kodi Bridge
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later

"""
Kodi Bridge (kodi-bridge)

Launches Kodi on request, plays a URL in it over the JSON-RPC WebSocket
(port 9090) and streams playback events back to the subscribing app.

Port: 8780
"""

import os
import sys

# Ensure services/ is on the path for sibling imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from kodibridge.service import main

if __name__ == "__main__":
    main()
