"""Controller-side client for the Lamela relay.

Formats ``main:`` command strings and talks to the gateway over WebSocket::

    async with ControllerClient("ws://localhost:8080/") as client:
        await client.send_command("goto", {"url": "https://example.com"})
        await client.send_command("click", {"selector": "#submit"}, browser="123456")
        results = await client.wait_for_results(2, timeout=30)

Usage::

    python -m lamela.client goto url=https://example.com [--browser CODE] [--wait 10]
    python -m lamela.client listBrowsers
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

import websockets
from websockets.asyncio.client import ClientConnection

from lamela.browsers.commands import COMMAND_PREFIX, LIST_BROWSERS, TARGET_PARAM
from lamela.browsers.packets import RAW_PING, RAW_PONG, CommandType, PacketType

logger = logging.getLogger(__name__)


def format_command(
    command: str,
    params: dict[str, Any] | None = None,
    browser: str | None = None,
) -> str:
    """Build a ``main:`` command string.

    Values are written as-is, so they must not contain whitespace; booleans
    are written as ``true``/``false`` to survive the gateway's coercion.
    """
    parts = [f"{COMMAND_PREFIX}:{command}"]
    for key, value in (params or {}).items():
        if not key or "=" in key or any(c.isspace() for c in key):
            raise ValueError(f"Invalid parameter name: {key!r}")
        if key == TARGET_PARAM:
            raise ValueError(f"'{TARGET_PARAM}' is reserved; pass browser= instead")
        parts.append(f"{key}={_format_value(key, value)}")
    if browser:
        parts.append(f"{TARGET_PARAM}={browser}")
    return " ".join(parts)


def _format_value(key: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if not text or any(c.isspace() for c in text):
        raise ValueError(f"Value for {key!r} must be non-empty without whitespace: {value!r}")
    return text


class ControllerClient:
    """WebSocket client issuing commands to the gateway."""

    def __init__(self, server_url: str = "ws://localhost:8080/") -> None:
        self.server_url = server_url
        self._ws: Optional[ClientConnection] = None
        self._backlog: list[dict] = []

    async def connect(self) -> None:
        self._ws = await websockets.connect(
            self.server_url,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
        )
        logger.info("Connected to %s", self.server_url)

    async def close(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None

    async def __aenter__(self) -> ControllerClient:
        await self.connect()
        return self

    async def __aexit__(self, *_) -> None:
        await self.close()

    # ── Commands ───────────────────────────────────────────────────

    async def send_command(
        self,
        command: str,
        params: dict[str, Any] | None = None,
        browser: str | None = None,
    ) -> str:
        text = format_command(command, params, browser)
        await self._send(text)
        logger.info("Sent command: %s", text)
        return text

    async def exit_all(self) -> None:
        await self._send(f"{COMMAND_PREFIX}:{CommandType.EXIT.value}")

    async def list_browsers(self, timeout: float = 10.0) -> list[dict]:
        await self._send(f"{COMMAND_PREFIX}:{LIST_BROWSERS}")
        packet = await self._wait_for(PacketType.BROWSER_LIST, timeout)
        return packet["data"].get("browsers", [])

    async def ping(self, timeout: float = 5.0) -> bool:
        """Round-trip a raw ``ping``."""
        await self._send(RAW_PING)
        try:
            async with asyncio.timeout(timeout):
                while True:
                    raw = await self._recv()
                    if raw == RAW_PONG:
                        return True
                    self._stash(raw)
        except TimeoutError:
            return False

    async def wait_for_results(self, count: int, timeout: float = 30.0) -> list[dict]:
        """Collect up to *count* ``COMMAND_RESULT`` payloads (fewer on timeout)."""
        results: list[dict] = []
        try:
            async with asyncio.timeout(timeout):
                while len(results) < count:
                    packet = await self._wait_for(PacketType.COMMAND_RESULT, None)
                    results.append(packet["data"])
        except TimeoutError:
            logger.warning("Got %d of %d results before timeout", len(results), count)
        return results

    async def packets(self) -> AsyncIterator[dict]:
        """Yield every structured packet from the gateway until it disconnects."""
        while self._backlog:
            yield self._backlog.pop(0)
        try:
            while True:
                raw = await self._recv()
                packet = _decode(raw)
                if packet is not None:
                    yield packet
        except websockets.ConnectionClosed:
            logger.info("Gateway connection closed")

    # ── Internal ───────────────────────────────────────────────────

    async def _send(self, text: str) -> None:
        if not self._ws:
            raise ConnectionError("Not connected")
        await self._ws.send(text)

    async def _recv(self) -> str:
        if not self._ws:
            raise ConnectionError("Not connected")
        raw = await self._ws.recv()
        return raw.decode("utf-8") if isinstance(raw, bytes) else raw

    async def _wait_for(self, packet_type: PacketType, timeout: float | None) -> dict:
        for i, packet in enumerate(self._backlog):
            if packet.get("type") == packet_type.value:
                return self._backlog.pop(i)
        async with asyncio.timeout(timeout):
            while True:
                raw = await self._recv()
                packet = _decode(raw)
                if packet is None:
                    continue
                if packet.get("type") == packet_type.value:
                    return packet
                if packet.get("type") == PacketType.ERROR.value:
                    logger.warning("Gateway error: %s", packet.get("data"))
                self._backlog.append(packet)

    def _stash(self, raw: str) -> None:
        packet = _decode(raw)
        if packet is not None:
            self._backlog.append(packet)


def _decode(raw: str) -> dict | None:
    try:
        packet = json.loads(raw)
    except ValueError:
        return None
    return packet if isinstance(packet, dict) else None


def _parse_params(tokens: list[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep:
            raise SystemExit(f"Expected key=value, got {token!r}")
        params[key] = value
    return params


async def _run(args: argparse.Namespace) -> None:
    async with ControllerClient(args.url) as client:
        if args.command == LIST_BROWSERS:
            for browser in await client.list_browsers(timeout=args.wait or 10.0):
                print(json.dumps(browser))
            return
        await client.send_command(args.command, _parse_params(args.params), args.browser)
        if args.wait:
            try:
                async with asyncio.timeout(args.wait):
                    async for packet in client.packets():
                        print(json.dumps(packet))
            except TimeoutError:
                pass


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="python -m lamela.client",
        description="Send a command through the Lamela relay",
    )
    parser.add_argument("command", help="Command name, e.g. goto, click, listBrowsers, exit")
    parser.add_argument("params", nargs="*", help="Parameters as key=value")
    parser.add_argument("--browser", default=None, help="Target access code (default: all)")
    parser.add_argument("--url", default="ws://localhost:8080/", help="Gateway WebSocket URL")
    parser.add_argument(
        "--wait",
        type=float,
        default=0.0,
        help="Seconds to print replies for after sending",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
