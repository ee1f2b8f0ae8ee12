"""Controller command routing and result correlation.

The controller speaks a small text protocol on the shared WebSocket::

    main:<command> key=value key=value ...
    main:exit
    main:listBrowsers

Commands are sent to one browser (``browser=<accessCode>``) or fanned out to
every registered browser, each copy getting its own command id.  Results come
back asynchronously as ``COMMAND_RESULT`` packets and are matched to the
pending command by id; commands that never get an answer expire.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from lamela.browsers.packets import (
    COMMAND_NAMES,
    CommandResultData,
    CommandType,
    PacketType,
    error_packet,
    make_packet,
    now_ms,
)
from lamela.browsers.sessions import BrowserSession, Channel, SessionRegistry

logger = logging.getLogger(__name__)

COMMAND_PREFIX = "main"
LIST_BROWSERS = "listBrowsers"
RESERVED_COMMANDS = frozenset({CommandType.EXIT.value, LIST_BROWSERS})
TARGET_PARAM = "browser"

_INT_RE = re.compile(r"[+-]?\d+")
_FLOAT_RE = re.compile(r"[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?")


# ── Errors ────────────────────────────────────────────────────────


class CommandError(Exception):
    """Base class for controller command failures reported to the issuer."""

    code = "COMMAND_ERROR"


class UnknownCommandError(CommandError):
    code = "UNKNOWN_COMMAND"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown command: {name or '(empty)'}")
        self.name = name


class BrowserNotFoundError(CommandError):
    code = "BROWSER_NOT_FOUND"

    def __init__(self, access_code: str) -> None:
        super().__init__(f"Browser with access code {access_code} not found")
        self.access_code = access_code


class DeliveryError(CommandError):
    code = "DELIVERY_FAILED"

    def __init__(self, access_code: str, reason: str) -> None:
        super().__init__(f"Failed to deliver command to {access_code}: {reason}")
        self.access_code = access_code


# ── Parsing ───────────────────────────────────────────────────────


@dataclass
class ParsedCommand:
    name: str
    params: dict[str, Any] = field(default_factory=dict)
    target: str | None = None
    reserved: bool = False


def coerce_value(value: str) -> bool | int | float | str:
    """Coerce a parameter value: booleans, then numbers, then plain strings.

    The conversion is intentionally lossy: ``id=42`` always arrives as the
    number 42 even if the caller meant the string.
    """
    if value == "true":
        return True
    if value == "false":
        return False
    if _INT_RE.fullmatch(value):
        return int(value)
    if _FLOAT_RE.fullmatch(value):
        return float(value)
    return value


def parse_command(text: str) -> ParsedCommand | None:
    """Parse a controller command string.

    Returns ``None`` when *text* is not a ``main:`` command at all, and raises
    :class:`UnknownCommandError` for an unrecognised command name.

    Each ``key=value`` token is split at its first ``=``; later ``=`` belong
    to the value, so ``url=https://x.io/?a=1`` keeps its query string.
    """
    prefix, sep, body = text.partition(":")
    if not sep or prefix != COMMAND_PREFIX:
        return None

    body = body.strip()
    if body in RESERVED_COMMANDS:
        return ParsedCommand(name=body, reserved=True)

    tokens = body.split()
    if not tokens or tokens[0] not in COMMAND_NAMES:
        raise UnknownCommandError(tokens[0] if tokens else "")

    name = tokens[0]
    params: dict[str, Any] = {}
    target: str | None = None
    for token in tokens[1:]:
        key, sep, value = token.partition("=")
        if not sep or not key or not value:
            logger.debug("Skipping malformed parameter %r in %s", token, name)
            continue
        if key == TARGET_PARAM:
            target = value
            continue
        params[key] = coerce_value(value)

    return ParsedCommand(name=name, params=params, target=target)


# ── Correlation ───────────────────────────────────────────────────


@dataclass
class PendingCommand:
    command_id: str
    access_code: str
    sent_at: float
    command: str | None = None
    origin: Channel | None = field(default=None, repr=False)
    expiry: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass
class CommandOutcome:
    command_id: str
    access_code: str
    command: str | None
    success: bool
    result: Any = None
    error: str | None = None
    timed_out: bool = False

    def to_packet(self) -> dict:
        return make_packet(
            PacketType.COMMAND_RESULT,
            accessCode=self.access_code,
            commandId=self.command_id,
            command=self.command,
            success=self.success,
            result=self.result,
            error=self.error,
            timedOut=self.timed_out,
            timestamp=now_ms(),
        )


class CommandCorrelator:
    """In-flight commands keyed by id, each with its own expiry timer.

    For every id exactly one of :meth:`resolve` or the expiry callback
    removes the entry.
    """

    def __init__(
        self,
        command_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.command_timeout = command_timeout
        self._clock = clock
        self._pending: dict[str, PendingCommand] = {}
        self._timeout_callbacks: list[Callable[[PendingCommand], None]] = []

    def on_timeout(self, callback: Callable[[PendingCommand], None]) -> None:
        """Register a callback invoked with each expired command."""
        self._timeout_callbacks.append(callback)

    def track(
        self,
        command_id: str,
        access_code: str,
        command: str | None = None,
        origin: Channel | None = None,
    ) -> PendingCommand:
        if command_id in self._pending:
            raise ValueError(f"Command {command_id} is already pending")
        pending = PendingCommand(
            command_id=command_id,
            access_code=access_code,
            sent_at=self._clock(),
            command=command,
            origin=origin,
        )
        self._pending[command_id] = pending
        pending.expiry = self._arm_expiry(pending)
        return pending

    def resolve(self, command_id: str) -> PendingCommand | None:
        """Remove and return a pending command; None if unknown or expired."""
        pending = self._pending.pop(command_id, None)
        if pending is None:
            return None
        if pending.expiry is not None:
            pending.expiry.cancel()
            pending.expiry = None
        return pending

    def get(self, command_id: str) -> PendingCommand | None:
        return self._pending.get(command_id)

    def pending(self) -> list[PendingCommand]:
        return list(self._pending.values())

    def clear(self) -> None:
        """Drop every pending command without reporting timeouts."""
        for pending in self._pending.values():
            if pending.expiry is not None:
                pending.expiry.cancel()
                pending.expiry = None
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._pending

    def _arm_expiry(self, pending: PendingCommand) -> asyncio.TimerHandle | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        return loop.call_later(self.command_timeout, self._expire, pending)

    def _expire(self, pending: PendingCommand) -> None:
        pending.expiry = None
        if self._pending.get(pending.command_id) is not pending:
            return
        del self._pending[pending.command_id]
        for cb in self._timeout_callbacks:
            try:
                cb(pending)
            except Exception:
                logger.exception("Error in command timeout callback")


# ── Routing ───────────────────────────────────────────────────────


class CommandRouter:
    """Turns controller commands into browser-bound packets and back."""

    def __init__(self, registry: SessionRegistry, correlator: CommandCorrelator) -> None:
        self.registry = registry
        self.correlator = correlator
        self._observers: list[Callable[[CommandOutcome], None]] = []
        self._tasks: set[asyncio.Task] = set()
        correlator.on_timeout(self._on_timeout)

    def on_outcome(self, callback: Callable[[CommandOutcome], None]) -> None:
        """Register a callback invoked with every result or timeout."""
        self._observers.append(callback)

    # ── Controller side ────────────────────────────────────────────

    async def handle_controller_message(self, text: str, origin: Channel | None = None) -> bool:
        """Handle a ``main:`` command. Returns False if *text* is not one."""
        try:
            parsed = parse_command(text)
        except UnknownCommandError as exc:
            logger.error("%s", exc)
            await self._reply(origin, error_packet(None, exc.code, str(exc)))
            return True
        if parsed is None:
            return False

        if parsed.reserved:
            if parsed.name == LIST_BROWSERS:
                logger.info("Received listBrowsers command from controller")
                await self.send_browser_list(origin)
            else:
                logger.info("Received exit command from controller")
                await self.broadcast_exit()
            return True

        try:
            if parsed.target is not None:
                await self.send_to_browser(parsed.target, parsed.name, parsed.params, origin)
            else:
                await self.broadcast(parsed.name, parsed.params, origin)
        except CommandError as exc:
            logger.error("%s", exc)
            await self._reply(origin, error_packet(parsed.target, exc.code, str(exc)))
        return True

    async def send_to_browser(
        self,
        access_code: str,
        command: str,
        params: dict[str, Any] | None = None,
        origin: Channel | None = None,
    ) -> str:
        """Send a tracked command to one browser and return its command id."""
        session = self.registry.get(access_code)
        if session is None:
            raise BrowserNotFoundError(access_code)
        return await self._dispatch(session, command, params or {}, origin)

    async def broadcast(
        self,
        command: str,
        params: dict[str, Any] | None = None,
        origin: Channel | None = None,
    ) -> list[str]:
        """Fan a command out to every browser, one command id per browser."""
        command_ids: list[str] = []
        for session in self.registry.list():
            try:
                command_ids.append(await self._dispatch(session, command, params or {}, origin))
            except DeliveryError as exc:
                await self._reply(origin, error_packet(exc.access_code, exc.code, str(exc)))
        if not command_ids:
            logger.info("Broadcast of %s reached no browsers", command)
        return command_ids

    async def broadcast_exit(self) -> int:
        """Tell every browser to shut down. Nothing is tracked for the reply."""
        sent = 0
        for session in self.registry.list():
            try:
                await self._dispatch(session, CommandType.EXIT.value, {}, None, track=False)
                sent += 1
            except DeliveryError:
                pass  # already logged and evicted
        return sent

    async def send_browser_list(self, origin: Channel | None) -> None:
        browsers = [s.to_dict() for s in self.registry.list()]
        if origin is None:
            logger.info("Browser list requested without a reply channel (%d browsers)", len(browsers))
            return
        await self._reply(
            origin,
            make_packet(PacketType.BROWSER_LIST, browsers=browsers, timestamp=now_ms()),
        )

    # ── Browser side ───────────────────────────────────────────────

    def handle_result(self, data: CommandResultData) -> CommandOutcome | None:
        """Match a ``COMMAND_RESULT`` to its pending command.

        A result naming a different browser than the command was sent to is
        dropped and the command stays pending for the real answer.
        """
        pending = self.correlator.get(data.commandId)
        if pending is None:
            logger.warning("Received result for unknown command %s", data.commandId)
            return None
        if data.accessCode and data.accessCode != pending.access_code:
            logger.warning(
                "Dropping result for command %s from %s; it was sent to %s",
                data.commandId, data.accessCode, pending.access_code,
            )
            return None
        self.correlator.resolve(data.commandId)

        outcome = CommandOutcome(
            command_id=pending.command_id,
            access_code=pending.access_code,
            command=pending.command,
            success=data.success,
            result=data.result,
            error=None if data.error is None else str(data.error),
        )
        if outcome.success:
            logger.info("Command %s completed successfully: %r", outcome.command_id, outcome.result)
        else:
            logger.error("Command %s failed: %s", outcome.command_id, outcome.error)
        self._report(pending, outcome)
        return outcome

    # ── Internal ───────────────────────────────────────────────────

    async def _dispatch(
        self,
        session: BrowserSession,
        command: str,
        params: dict[str, Any],
        origin: Channel | None,
        track: bool = True,
    ) -> str:
        access_code = session.access_code
        command_id = str(uuid.uuid4())
        packet = make_packet(
            PacketType.COMMAND,
            accessCode=access_code,
            commandId=command_id,
            command=command,
            params=dict(params),
            timestamp=now_ms(),
        )
        if track:
            self.correlator.track(command_id, access_code, command=command, origin=origin)

        try:
            await session.channel.send_json(packet)
        except Exception as exc:
            if track:
                self.correlator.resolve(command_id)
            logger.warning("Failed to send %s to browser %s: %s", command, access_code, exc)
            self.registry.evict(access_code, session.channel, reason="send failed")
            raise DeliveryError(access_code, str(exc)) from exc

        logger.info("Sent command %s (%s) to browser %s", command, command_id, access_code)
        return command_id

    def _on_timeout(self, pending: PendingCommand) -> None:
        logger.error("Command %s timed out", pending.command_id)
        outcome = CommandOutcome(
            command_id=pending.command_id,
            access_code=pending.access_code,
            command=pending.command,
            success=False,
            error="Command timed out",
            timed_out=True,
        )
        self._report(pending, outcome)

    def _report(self, pending: PendingCommand, outcome: CommandOutcome) -> None:
        for cb in self._observers:
            try:
                cb(outcome)
            except Exception:
                logger.exception("Error in command outcome callback")

        origin = pending.origin
        if origin is None or origin.closed:
            return
        task = asyncio.create_task(self._reply(origin, outcome.to_packet()))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _reply(self, channel: Channel | None, packet: dict) -> None:
        if channel is None or channel.closed:
            return
        try:
            await channel.send_json(packet)
        except Exception:
            logger.warning("Failed to reply to controller", exc_info=True)
