"""pytest configuration for Lamela Gateway tests."""

from __future__ import annotations

import json

import pytest

from lamela.db import init_db, set_db_path


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeChannel:
    """In-memory stand-in for a browser or controller connection."""

    def __init__(self, fail_sends: bool = False) -> None:
        self.connection_id = "fake-conn"
        self.access_code: str | None = None
        self.sent: list[str] = []
        self.pings = 0
        self.fail_sends = fail_sends
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    async def send(self, text: str) -> None:
        if self.fail_sends or self._closed:
            raise ConnectionError("channel is closed")
        self.sent.append(text)

    async def send_json(self, message: dict) -> None:
        await self.send(json.dumps(message))

    async def ping(self) -> None:
        if self.fail_sends or self._closed:
            raise ConnectionError("channel is closed")
        self.pings += 1

    @property
    def packets(self) -> list[dict]:
        out = []
        for text in self.sent:
            try:
                out.append(json.loads(text))
            except ValueError:
                continue
        return out

    def of_type(self, packet_type: str) -> list[dict]:
        return [p for p in self.packets if p.get("type") == packet_type]


class FakeStore:
    """Records persistence calls instead of touching SQLite."""

    def __init__(self) -> None:
        self.online: list[tuple[str, str]] = []
        self.offline: list[str] = []

    def upsert_online(self, access_code: str, user_agent: str) -> None:
        self.online.append((access_code, user_agent))

    def mark_offline(self, access_code: str) -> None:
        self.offline.append(access_code)


class ManualClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def temp_db(tmp_path):
    """Use a fresh temp database for the test."""
    set_db_path(tmp_path / "test.db")
    init_db()
    yield tmp_path / "test.db"
