"""Lamela Gateway: browser session relay.

Server-side components for the browser-extension relay:
  - Packets: wire envelope, packet kinds and the scraping command catalogue
  - Sessions: registry of connected browsers with liveness eviction
  - Commands: controller command parsing, dispatch and result correlation
  - Protocol: structured packet handling for browser messages
  - Store: best-effort SQLite mirror of browser online state
  - WebSocket: per-connection message loop tying it all together
"""
