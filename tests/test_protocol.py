"""Tests for browser packet handling (INIT / EXIT / PING / PONG / COMMAND_RESULT)."""

from __future__ import annotations

import pytest

from conftest import FakeChannel, FakeStore
from lamela.browsers.commands import CommandCorrelator, CommandRouter
from lamela.browsers.protocol import PacketHandler
from lamela.browsers.sessions import SessionRegistry


@pytest.fixture
def handler(store):
    registry = SessionRegistry(30.0, store=store)
    router = CommandRouter(registry, CommandCorrelator(30.0))
    return PacketHandler(registry, router, store=store)


class TestInit:
    @pytest.mark.asyncio
    async def test_init_registers_and_acks(self, handler, channel, store):
        await handler.handle_packet(channel, {
            "type": "INIT",
            "data": {"accessCode": "abc123", "userAgent": "Chrome/120"},
        })

        session = handler.registry.get("abc123")
        assert session is not None and session.channel is channel
        assert channel.access_code == "abc123"
        assert store.online == [("abc123", "Chrome/120")]
        [ack] = channel.packets
        assert ack["type"] == "INIT"
        assert ack["data"]["success"] is True
        assert ack["data"]["accessCode"] == "abc123"
        assert isinstance(ack["data"]["serverTime"], int)
        await handler.registry.stop()

    @pytest.mark.asyncio
    async def test_init_without_access_code_is_invalid(self, handler, channel, store):
        await handler.handle_packet(channel, {"type": "INIT", "data": {"userAgent": "x"}})

        assert len(handler.registry) == 0
        assert store.online == []
        [error] = channel.packets
        assert error["type"] == "ERROR"
        assert error["data"]["code"] == "INVALID_PACKET"
        assert error["data"]["accessCode"] == "unknown"

    @pytest.mark.asyncio
    async def test_reinit_under_new_code_drops_old_session(self, handler, channel, store):
        await handler.handle_packet(channel, {"type": "INIT", "data": {"accessCode": "old"}})
        await handler.handle_packet(channel, {"type": "INIT", "data": {"accessCode": "new"}})

        assert handler.registry.get("old") is None
        assert handler.registry.get("new") is not None
        assert store.offline == ["old"]
        await handler.registry.stop()


class TestExit:
    @pytest.mark.asyncio
    async def test_exit_evicts_and_acks(self, handler, channel, store):
        await handler.handle_packet(channel, {"type": "INIT", "data": {"accessCode": "abc"}})
        await handler.handle_packet(channel, {"type": "EXIT", "data": {"accessCode": "abc"}})

        assert handler.registry.get("abc") is None
        assert channel.access_code is None
        assert store.offline == ["abc"]
        ack = channel.packets[-1]
        assert ack["type"] == "EXIT"
        assert ack["data"]["success"] is True

    @pytest.mark.asyncio
    async def test_exit_for_unknown_code_still_acks(self, handler, channel, store):
        await handler.handle_packet(channel, {"type": "EXIT", "data": {"accessCode": "ghost"}})

        assert store.offline == []
        assert channel.packets[-1]["type"] == "EXIT"


class TestLiveness:
    @pytest.mark.asyncio
    async def test_ping_touches_and_echoes_timestamp(self, handler, clock):
        handler.registry._clock = clock
        channel = FakeChannel()
        await handler.handle_packet(channel, {"type": "INIT", "data": {"accessCode": "abc"}})
        clock.advance(10)

        await handler.handle_packet(channel, {
            "type": "PING",
            "data": {"accessCode": "abc", "timestamp": 1700000000123},
        })

        assert handler.registry.get("abc").last_liveness == clock.now
        pong = channel.packets[-1]
        assert pong["type"] == "PONG"
        assert pong["data"]["accessCode"] == "abc"
        assert pong["data"]["timestamp"] == 1700000000123
        assert isinstance(pong["data"]["serverTime"], int)
        await handler.registry.stop()

    @pytest.mark.asyncio
    async def test_ping_for_unknown_code_still_pongs(self, handler, channel):
        await handler.handle_packet(channel, {
            "type": "PING",
            "data": {"accessCode": "ghost", "timestamp": 1},
        })
        assert channel.packets[-1]["type"] == "PONG"
        assert len(handler.registry) == 0

    @pytest.mark.asyncio
    async def test_pong_refreshes_bound_session_silently(self, handler, clock):
        handler.registry._clock = clock
        channel = FakeChannel()
        await handler.handle_packet(channel, {"type": "INIT", "data": {"accessCode": "abc"}})
        sent_before = len(channel.sent)
        clock.advance(5)

        await handler.handle_packet(channel, {"type": "PONG", "data": {}})

        assert handler.registry.get("abc").last_liveness == clock.now
        assert len(channel.sent) == sent_before
        await handler.registry.stop()


class TestResultsAndErrors:
    @pytest.mark.asyncio
    async def test_command_result_resolves_pending(self, handler, channel):
        handler.registry.register("abc", "", FakeChannel())
        command_id = await handler.router.send_to_browser("abc", "getText")

        await handler.handle_packet(channel, {
            "type": "COMMAND_RESULT",
            "data": {"accessCode": "abc", "commandId": command_id, "success": True, "result": "x"},
        })

        assert command_id not in handler.router.correlator
        assert channel.sent == []
        await handler.registry.stop()

    @pytest.mark.asyncio
    async def test_result_for_unknown_command_is_silent(self, handler, channel):
        await handler.handle_packet(channel, {
            "type": "COMMAND_RESULT",
            "data": {"commandId": "nope", "success": True},
        })
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_unknown_packet_type(self, handler, channel):
        await handler.handle_packet(channel, {"type": "DANCE", "data": {"accessCode": "abc"}})

        [error] = channel.packets
        assert error["type"] == "ERROR"
        assert error["data"]["code"] == "UNKNOWN_PACKET_TYPE"
        assert error["data"]["accessCode"] == "abc"
        assert "DANCE" in error["data"]["message"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [[1, 2], "text", {"data": {}}, {"type": "INIT", "data": [1]}])
    async def test_malformed_envelopes(self, handler, channel, raw):
        await handler.handle_packet(channel, raw)

        [error] = channel.packets
        assert error["type"] == "ERROR"
        assert error["data"]["code"] == "INVALID_PACKET"

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_internal_error(self, handler, channel):
        def explode(*_args, **_kwargs):
            raise RuntimeError("registry on fire")

        handler.registry.register = explode
        await handler.handle_packet(channel, {"type": "INIT", "data": {"accessCode": "abc"}})

        [error] = channel.packets
        assert error["data"]["code"] == "INTERNAL_ERROR"
        assert error["data"]["accessCode"] == "abc"
        assert "registry on fire" in error["data"]["message"]

    @pytest.mark.asyncio
    async def test_failed_error_reply_does_not_raise(self, handler):
        broken = FakeChannel(fail_sends=True)
        await handler.handle_packet(broken, {"type": "DANCE"})
