"""Structured packet handling for browser extension messages.

  Browser → Gateway:
    INIT, EXIT, PING, PONG, COMMAND_RESULT

  Gateway → Browser:
    INIT (ack), EXIT (ack), PONG, PING (probe), COMMAND, ERROR

Each packet is classified once and handled; nothing here keeps state between
messages.  Every failure is turned into an ``ERROR`` packet for the sender.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, ValidationError

from lamela.browsers.commands import CommandRouter
from lamela.browsers.packets import (
    CommandResultData,
    ExitData,
    InitData,
    PacketError,
    PacketType,
    PingData,
    access_code_of,
    error_packet,
    make_packet,
    now_ms,
    parse_packet,
)
from lamela.browsers.sessions import Channel, SessionRegistry

if TYPE_CHECKING:
    from lamela.browsers.store import BrowserStore

logger = logging.getLogger(__name__)

Handler = Callable[[Channel, dict], Awaitable[None]]


class PongData(BaseModel):
    model_config = ConfigDict(extra="allow")

    accessCode: str | None = None


class PacketHandler:
    """Dispatches decoded browser packets to the registry and router."""

    def __init__(
        self,
        registry: SessionRegistry,
        router: CommandRouter,
        store: BrowserStore | None = None,
    ) -> None:
        self.registry = registry
        self.router = router
        self.store = store
        self._handlers: dict[str, Handler] = {
            PacketType.INIT.value: self._handle_init,
            PacketType.EXIT.value: self._handle_exit,
            PacketType.PING.value: self._handle_ping,
            PacketType.PONG.value: self._handle_pong,
            PacketType.COMMAND_RESULT.value: self._handle_result,
        }

    async def handle_packet(self, channel: Channel, raw: Any) -> None:
        """Handle one decoded JSON message. Never raises."""
        access_code = access_code_of(raw)
        try:
            packet = parse_packet(raw)
            handler = self._handlers.get(packet.type)
            if handler is None:
                logger.warning("Unknown packet type from %s: %s", access_code, packet.type)
                await self._send_error(
                    channel, access_code, "UNKNOWN_PACKET_TYPE",
                    f"Unknown packet type: {packet.type}",
                )
                return
            await handler(channel, packet.data)
        except (PacketError, ValidationError) as exc:
            logger.warning("Invalid packet from %s: %s", access_code, exc)
            await self._send_error(channel, access_code, "INVALID_PACKET", _describe(exc))
        except Exception as exc:
            logger.exception("Error handling packet from %s", access_code)
            await self._send_error(channel, access_code, "INTERNAL_ERROR", str(exc))

    # ── Handlers ───────────────────────────────────────────────────

    async def _handle_init(self, channel: Channel, payload: dict) -> None:
        data = InitData.model_validate(payload)
        access_code = data.accessCode

        previous = channel.access_code
        if previous and previous != access_code:
            self.registry.evict(previous, channel, reason="connection re-registered")

        self.registry.register(access_code, data.userAgent, channel)
        channel.access_code = access_code
        if self.store is not None:
            self.store.upsert_online(access_code, data.userAgent)

        await channel.send_json(make_packet(
            PacketType.INIT,
            success=True,
            accessCode=access_code,
            serverTime=now_ms(),
        ))

    async def _handle_exit(self, channel: Channel, payload: dict) -> None:
        data = ExitData.model_validate(payload)
        self.registry.evict(data.accessCode, reason="browser exit")
        if channel.access_code == data.accessCode:
            channel.access_code = None

        await channel.send_json(make_packet(
            PacketType.EXIT,
            success=True,
            serverTime=now_ms(),
        ))

    async def _handle_ping(self, channel: Channel, payload: dict) -> None:
        data = PingData.model_validate(payload)
        self.registry.touch(data.accessCode)

        await channel.send_json(make_packet(
            PacketType.PONG,
            accessCode=data.accessCode,
            timestamp=payload.get("timestamp"),
            serverTime=now_ms(),
        ))

    async def _handle_pong(self, channel: Channel, payload: dict) -> None:
        data = PongData.model_validate(payload)
        access_code = data.accessCode or channel.access_code
        if access_code:
            self.registry.touch(access_code)

    async def _handle_result(self, channel: Channel, payload: dict) -> None:
        data = CommandResultData.model_validate(payload)
        self.router.handle_result(data)

    # ── Helpers ────────────────────────────────────────────────────

    async def _send_error(self, channel: Channel, access_code: str, code: str, message: str) -> None:
        try:
            await channel.send_json(error_packet(access_code, code, message))
        except Exception:
            logger.warning("Could not send %s error to %s", code, access_code, exc_info=True)


def _describe(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'data'}: {err['msg']}"
            for err in exc.errors()
        )
    return str(exc)
