"""Packet definitions for browser/controller WebSocket traffic.

Every structured message is a JSON envelope ``{"type": KIND, "data": {...}}``.
Timestamps on the wire are epoch milliseconds.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

RAW_PING = "ping"
RAW_PONG = "pong"


class PacketType(str, Enum):
    INIT = "INIT"
    EXIT = "EXIT"
    PING = "PING"
    PONG = "PONG"
    ERROR = "ERROR"
    COMMAND = "COMMAND"
    COMMAND_RESULT = "COMMAND_RESULT"
    BROWSER_LIST = "BROWSER_LIST"


class CommandType(str, Enum):
    """Scraping commands a browser extension understands."""

    # Navigation
    GOTO = "goto"
    RELOAD = "reload"
    BACK = "back"
    FORWARD = "forward"

    # Content interaction
    CLICK = "click"
    TYPE = "type"
    SELECT = "select"
    HOVER = "hover"
    FOCUS = "focus"

    # Content extraction
    SCREENSHOT = "screenshot"
    PDF = "pdf"
    GET_TEXT = "getText"
    GET_HTML = "getHtml"
    GET_ATTRIBUTE = "getAttribute"
    EVALUATE = "evaluate"

    # Wait
    WAIT_FOR_SELECTOR = "waitForSelector"
    WAIT_FOR_NAVIGATION = "waitForNavigation"
    WAIT_FOR_TIMEOUT = "waitForTimeout"

    # Browser control
    EXIT = "exit"


COMMAND_NAMES = frozenset(c.value for c in CommandType)


class PacketError(ValueError):
    """Raised when an inbound packet is not a valid envelope."""


# ── Inbound payloads ──────────────────────────────────────────────


class Packet(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class InitData(BaseModel):
    model_config = ConfigDict(extra="allow")

    accessCode: str = Field(min_length=1)
    userAgent: str = ""


class ExitData(BaseModel):
    model_config = ConfigDict(extra="allow")

    accessCode: str = Field(min_length=1)


class PingData(BaseModel):
    model_config = ConfigDict(extra="allow")

    accessCode: str = Field(min_length=1)
    timestamp: Any = None


class CommandResultData(BaseModel):
    model_config = ConfigDict(extra="allow")

    commandId: str = Field(min_length=1)
    accessCode: str = ""
    success: bool = False
    result: Any = None
    error: Any = None
    timestamp: Any = None


# ── Helpers ───────────────────────────────────────────────────────


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def make_packet(packet_type: PacketType, **data: Any) -> dict:
    """Build an outbound envelope."""
    return {"type": packet_type.value, "data": data}


def error_packet(access_code: str | None, code: str, message: str) -> dict:
    return make_packet(
        PacketType.ERROR,
        accessCode=access_code or "unknown",
        code=code,
        message=message,
    )


def parse_packet(raw: Any) -> Packet:
    """Validate the outer envelope of a decoded JSON message."""
    if not isinstance(raw, dict):
        raise PacketError("Packet must be a JSON object")
    if not isinstance(raw.get("type"), str):
        raise PacketError("Packet is missing a 'type'")
    data = raw.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise PacketError("Packet 'data' must be an object")
    return Packet(type=raw["type"], data=data)


def access_code_of(raw: Any) -> str:
    """Best-effort access code extraction for error replies."""
    if isinstance(raw, dict):
        data = raw.get("data")
        if isinstance(data, dict):
            code = data.get("accessCode")
            if isinstance(code, str) and code:
                return code
    return "unknown"
