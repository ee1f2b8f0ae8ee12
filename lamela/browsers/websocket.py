"""WebSocket endpoint shared by browser extensions and the controller.

Every inbound text frame is classified in order:

  1. raw ``ping``            → raw ``pong`` (and a liveness refresh)
  2. ``main:...``            → controller command (:mod:`lamela.browsers.commands`)
  3. JSON packet             → browser protocol (:mod:`lamela.browsers.protocol`)

Mount it in FastAPI via :func:`lamela.server.create_app`, which routes both
``/`` and ``/ws`` to :meth:`Gateway.serve`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid

from fastapi import WebSocket, WebSocketDisconnect

from lamela.browsers.commands import COMMAND_PREFIX, CommandCorrelator, CommandRouter
from lamela.browsers.packets import (
    RAW_PING,
    RAW_PONG,
    PacketType,
    error_packet,
    make_packet,
    now_ms,
)
from lamela.browsers.protocol import PacketHandler
from lamela.browsers.sessions import SessionRegistry
from lamela.browsers.store import BrowserStore
from lamela.config import GatewaySettings

logger = logging.getLogger(__name__)


class BrowserConnection:
    """Tracks one WebSocket and the access code registered on it, if any."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.connection_id = f"conn-{uuid.uuid4().hex[:8]}"
        self.connected_at = time.time()
        self.access_code: str | None = None
        self._closed = False
        self._send_lock = asyncio.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def mark_closed(self) -> None:
        self._closed = True

    async def send(self, text: str) -> None:
        """Send a text frame. Marks the connection closed on failure."""
        if self._closed:
            raise ConnectionError(f"Connection {self.connection_id} is closed")
        async with self._send_lock:
            try:
                await self.websocket.send_text(text)
            except Exception:
                self._closed = True
                raise

    async def send_json(self, message: dict) -> None:
        await self.send(json.dumps(message))

    async def ping(self) -> None:
        """Application-level liveness probe; browsers answer with ``PONG``."""
        await self.send_json(make_packet(
            PacketType.PING,
            accessCode=self.access_code,
            timestamp=now_ms(),
        ))


class Gateway:
    """Owns the registry and correlator and wires them to connections."""

    def __init__(
        self,
        session_timeout: float = 30.0,
        command_timeout: float = 30.0,
        store: BrowserStore | None = None,
    ) -> None:
        self.store = store
        self.registry = SessionRegistry(session_timeout, store=store)
        self.correlator = CommandCorrelator(command_timeout)
        self.router = CommandRouter(self.registry, self.correlator)
        self.packets = PacketHandler(self.registry, self.router, store=store)
        self._connections: dict[str, BrowserConnection] = {}

    @classmethod
    def from_settings(cls, settings: GatewaySettings, store: BrowserStore | None = None) -> Gateway:
        return cls(
            session_timeout=settings.session_timeout,
            command_timeout=settings.command_timeout,
            store=store,
        )

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        await self.registry.start()
        logger.info("Gateway started")

    async def stop(self) -> None:
        await self.registry.stop()
        self.correlator.clear()
        if self.store is not None:
            await self.store.flush()
        logger.info("Gateway stopped")

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ── Connection handling ────────────────────────────────────────

    async def serve(self, websocket: WebSocket) -> None:
        """Run the receive loop for one client until it disconnects."""
        await websocket.accept()
        conn = BrowserConnection(websocket)
        self._connections[conn.connection_id] = conn
        logger.info("New client connected: %s", conn.connection_id)

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                text = message.get("text")
                if text is None:
                    data = message.get("bytes") or b""
                    text = data.decode("utf-8", errors="replace")
                try:
                    await self.handle_message(conn, text)
                except Exception as exc:
                    logger.exception("Error processing message on %s", conn.connection_id)
                    await self._send_internal_error(conn, exc)
        except WebSocketDisconnect:
            pass
        except Exception:
            logger.exception("Error in WebSocket for %s", conn.connection_id)
        finally:
            self._connections.pop(conn.connection_id, None)
            self.disconnect(conn)
            logger.info("Client disconnected: %s (%s)", conn.connection_id, conn.access_code or "no browser")

    async def handle_message(self, conn: BrowserConnection, text: str) -> None:
        """Classify and handle one inbound text message."""
        if text == RAW_PING:
            if conn.access_code:
                self.registry.touch(conn.access_code)
            await conn.send(RAW_PONG)
            return

        if text.startswith(f"{COMMAND_PREFIX}:"):
            if await self.router.handle_controller_message(text, conn):
                return

        try:
            raw = json.loads(text)
        except (ValueError, RecursionError) as exc:
            logger.warning("Unparseable message on %s: %s", conn.connection_id, exc)
            await conn.send_json(error_packet(
                conn.access_code, "INVALID_FORMAT", f"Error processing message: {exc}",
            ))
            return

        await self.packets.handle_packet(conn, raw)

    async def _send_internal_error(self, conn: BrowserConnection, exc: Exception) -> None:
        if conn.closed:
            return
        try:
            await conn.send_json(error_packet(
                conn.access_code, "INTERNAL_ERROR", f"Error processing message: {exc}",
            ))
        except Exception:
            logger.warning("Could not report error to %s", conn.connection_id, exc_info=True)

    def disconnect(self, conn: BrowserConnection) -> None:
        """Treat a closed connection as teardown for its browser."""
        conn.mark_closed()
        if conn.access_code:
            self.registry.evict(conn.access_code, conn, reason="connection closed")
