"""
Unit tests for the bridge orchestrator

Both sides are fakes; these tests cover wiring between the queues and how
the bridge stops when either side ends.
"""

import asyncio

import pytest

from chat.chat_relay import ChatConnectError, ChatConnectionClosed
from core.bridge import CHAT_SIDE, MESH_SIDE, Bridge, BridgeTerminatedError
from mesh.transport import TransportClosedError, TransportConnectError
from models.message import RelayMessage
from tests.mocks.external_service_mocks import FakeChatRelay
from tests.mocks.meshtastic_mocks import FakeTransport, make_text_packet


@pytest.mark.unit
class TestBridgeTermination:

    @pytest.mark.asyncio
    async def test_mesh_connect_failure_stops_bridge(self, bridge_config):
        chat = FakeChatRelay()
        transport = FakeTransport(connect_error=TransportConnectError("Failed to open serial port /dev/ttyUSB0"))
        bridge = Bridge(bridge_config, chat=chat, transport=transport)

        with pytest.raises(BridgeTerminatedError) as exc_info:
            await asyncio.wait_for(bridge.run(), 2)

        assert exc_info.value.side == MESH_SIDE
        assert isinstance(exc_info.value.cause, TransportConnectError)
        assert "Meshtastic handler ended" in str(exc_info.value)
        assert transport.closed
        assert chat.closed

    @pytest.mark.asyncio
    async def test_chat_connect_failure_stops_bridge(self, bridge_config):
        chat = FakeChatRelay(connect_error=ChatConnectError("Failed to connect to IRC server"))
        transport = FakeTransport()
        bridge = Bridge(bridge_config, chat=chat, transport=transport)

        with pytest.raises(BridgeTerminatedError) as exc_info:
            await asyncio.wait_for(bridge.run(), 2)

        assert exc_info.value.side == CHAT_SIDE
        assert transport.closed

    @pytest.mark.asyncio
    async def test_chat_disconnect_stops_mesh_side(self, bridge_config):
        chat = FakeChatRelay(close_after_posts=0)
        transport = FakeTransport()
        bridge = Bridge(bridge_config, chat=chat, transport=transport)

        with pytest.raises(BridgeTerminatedError) as exc_info:
            await asyncio.wait_for(bridge.run(), 2)

        assert exc_info.value.side == CHAT_SIDE
        assert isinstance(exc_info.value.cause, ChatConnectionClosed)
        assert exc_info.value.__cause__ is exc_info.value.cause
        assert transport.closed

    @pytest.mark.asyncio
    async def test_lost_mesh_link_stops_chat_side(self, bridge_config):
        chat = FakeChatRelay()
        transport = FakeTransport(fail_after_replay=TransportClosedError("Serial link to /dev/ttyUSB0 was lost"))
        bridge = Bridge(bridge_config, chat=chat, transport=transport)

        with pytest.raises(BridgeTerminatedError, match="was lost") as exc_info:
            await asyncio.wait_for(bridge.run(), 2)

        assert exc_info.value.side == MESH_SIDE
        assert chat.closed


@pytest.mark.unit
class TestBridgeRelay:

    @pytest.mark.asyncio
    async def test_messages_flow_both_ways(self, bridge_config):
        chat = FakeChatRelay(messages=[RelayMessage("alice", "hello mesh")], close_after_posts=1)
        transport = FakeTransport(packets=[make_text_packet("hello irc", sender=0xdeadbeef)])
        bridge = Bridge(bridge_config, chat=chat, transport=transport)

        with pytest.raises(BridgeTerminatedError):
            await asyncio.wait_for(bridge.run(), 2)

        assert chat.posted == ["[mesh-deadbeef]: hello irc"]

    @pytest.mark.asyncio
    async def test_chat_message_reaches_mesh(self, bridge_config):
        chat = FakeChatRelay(messages=[RelayMessage("alice", "hello mesh")])
        transport = FakeTransport()
        bridge = Bridge(bridge_config, chat=chat, transport=transport)
        task = asyncio.create_task(bridge.run())

        await asyncio.wait_for(transport.sent_event.wait(), 2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert transport.sent_texts() == ["[IRC-alice] hello mesh"]
        assert transport.closed
        assert chat.closed

    def test_terminated_error_message(self):
        error = BridgeTerminatedError(MESH_SIDE, TransportClosedError("gone"))

        assert str(error) == "Bridge terminated unexpectedly: Meshtastic handler ended (TransportClosedError: gone)"
