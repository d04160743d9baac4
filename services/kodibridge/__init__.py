"""
Kodi bridge — hands video playback from the TV front-end to Kodi and
reports the playback lifecycle back to the caller.

  transport.py   — Kodi JSON-RPC over WebSocket (correlation, heartbeat, watchdog)
  supervisor.py  — connect with capped backoff under an overall deadline
  session.py     — PlaySession state machine (launch → connect → open → play)
  registry.py    — single active session, newer requests preempt older ones
  launcher.py    — app launcher client (start Kodi, hand focus back)
  service.py     — aiohttp surface: playAsync subscription, ping, status
"""
