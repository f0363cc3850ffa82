"""
Unit tests for the RadioLink asyncio adapter

The meshtastic serial interface is replaced with FakeSerialInterface; pubsub
listeners are invoked directly, the way the library's reader thread would.
"""

import asyncio

import pytest
from meshtastic.protobuf import mesh_pb2

from mesh.radio_link import ENVELOPE_QUEUE_SIZE, RadioLink
from mesh.transport import TransportClosedError, TransportError
from tests.mocks.meshtastic_mocks import FakeSerialInterface, SlowHandshakeInterface, make_text_packet


@pytest.fixture
def link():
    return RadioLink("/dev/ttyACM0", timeout=5, interface_factory=FakeSerialInterface)


@pytest.mark.unit
class TestRadioLinkOpen:

    @pytest.mark.asyncio
    async def test_open_waits_for_config(self, link):
        await link.open()

        try:
            assert link.interface.devPath == "/dev/ttyACM0"
            assert link.interface.connectNow is False
            assert link.interface.timeout == 5
            assert link.interface.wait_calls == 1
            assert link.is_connected
        finally:
            await link.close()

    @pytest.mark.asyncio
    async def test_open_without_config_only_connects(self, link):
        await link.open(wait_for_config=False)

        try:
            link.handshake.join(1)
            assert link.interface.connect_calls == 1
            assert link.interface.wait_calls == 0
            assert not link.is_connected
        finally:
            await link.close()

    @pytest.mark.asyncio
    async def test_failed_handshake_closes_interface(self):
        created = []

        class BrokenInterface(FakeSerialInterface):
            def __init__(self, **kwargs):
                super().__init__(**kwargs)
                created.append(self)

            def waitForConfig(self):
                raise OSError("Timed out waiting for connection completion")

        link = RadioLink("/dev/ttyACM0", interface_factory=BrokenInterface)

        with pytest.raises(OSError):
            await link.open()

        assert created[0].closed
        assert link.interface is None


@pytest.mark.unit
class TestRadioLinkEvents:

    @pytest.mark.asyncio
    async def test_received_packet_becomes_envelope(self, link):
        await link.open()
        packet = make_text_packet("hello")

        link._on_receive({'raw': packet, 'decoded': {}}, link.interface)
        envelope = await asyncio.wait_for(link.next_envelope(), 1)

        assert envelope.packet == packet
        await link.close()

    @pytest.mark.asyncio
    async def test_events_from_other_interfaces_are_ignored(self, link):
        await link.open()

        link._on_receive({'raw': make_text_packet("x")}, object())
        link._on_connection_lost(object())
        await asyncio.sleep(0)

        assert link._envelopes.empty()
        await link.close()

    @pytest.mark.asyncio
    async def test_node_update_becomes_node_info(self, link):
        await link.open()

        link._on_node_updated({'num': 0x42, 'user': {'shortName': 'ANN', 'longName': 'Annie'}}, link.interface)
        envelope = await asyncio.wait_for(link.next_envelope(), 1)

        assert envelope.node_info.num == 0x42
        assert envelope.node_info.user.short_name == "ANN"
        assert envelope.node_info.user.long_name == "Annie"
        await link.close()

    @pytest.mark.asyncio
    async def test_connection_lost_delivers_none(self, link):
        await link.open()

        link._on_connection_lost(link.interface)

        assert await asyncio.wait_for(link.next_envelope(), 1) is None
        await link.close()

    @pytest.mark.asyncio
    async def test_first_envelope_reads_my_info(self, link):
        await link.open()

        envelope = await link.first_envelope(0.5)

        assert envelope.WhichOneof('payload_variant') == 'my_info'
        assert envelope.my_info.my_node_num == 0x0badcafe
        await link.close()

    @pytest.mark.asyncio
    async def test_first_envelope_times_out(self, link):
        await link.open(wait_for_config=False)
        link.handshake.join(1)

        assert await link.first_envelope(0.1) is None
        await link.close()


@pytest.mark.unit
class TestRadioLinkSend:

    @pytest.mark.asyncio
    async def test_send_wraps_packet(self, link):
        await link.open()
        interface = link.interface
        packet = make_text_packet("out")

        await link.send(packet)

        assert interface.sent == [mesh_pb2.ToRadio(packet=packet)]
        await link.close()

    @pytest.mark.asyncio
    async def test_send_when_closed(self, link):
        with pytest.raises(TransportClosedError):
            await link.send(make_text_packet("out"))

    @pytest.mark.asyncio
    async def test_write_error_becomes_transport_error(self, link):
        await link.open()

        def broken(to_radio):
            raise OSError("write failed")

        link.interface._sendToRadio = broken

        with pytest.raises(TransportError, match="Failed to write to /dev/ttyACM0"):
            await link.send(make_text_packet("out"))
        await link.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, link):
        await link.open()
        interface = link.interface

        await link.close()
        await link.close()

        assert interface.closed
        assert not link.is_connected


@pytest.mark.unit
class TestRadioLinkBackgroundHandshake:

    @pytest.mark.asyncio
    async def test_open_returns_before_handshake_finishes(self):
        link = RadioLink("/dev/ttyACM0", interface_factory=SlowHandshakeInterface)

        await asyncio.wait_for(link.open(wait_for_config=False), 1)
        interface = link.interface

        try:
            assert link.handshake.is_alive()
            envelope = await asyncio.wait_for(link.next_envelope(), 1)
            assert envelope.node_info.num == 0x1234
            assert envelope.node_info.user.short_name == "N1"
        finally:
            await link.close()

        link.handshake.join(1)
        assert not link.handshake.is_alive()
        assert interface.closed

    @pytest.mark.asyncio
    async def test_failed_handshake_reports_lost_link(self):
        class RefusingInterface(FakeSerialInterface):
            def connect(self):
                raise OSError("Timed out waiting for connection completion")

        link = RadioLink("/dev/ttyACM0", interface_factory=RefusingInterface)
        await link.open(wait_for_config=False)

        assert await asyncio.wait_for(link.next_envelope(), 1) is None
        await link.close()


@pytest.mark.unit
class TestRadioLinkQueueLimit:

    @pytest.mark.asyncio
    async def test_full_queue_drops_packets_but_keeps_link_loss(self, link):
        await link.open()
        for _ in range(ENVELOPE_QUEUE_SIZE):
            link._enqueue(mesh_pb2.FromRadio(packet=make_text_packet("fill")))

        link._enqueue(mesh_pb2.FromRadio(packet=make_text_packet("overflow")))
        assert link.dropped == 1
        assert link._envelopes.qsize() == ENVELOPE_QUEUE_SIZE

        link._enqueue(None)
        assert link.dropped == 2
        assert link._envelopes.qsize() == ENVELOPE_QUEUE_SIZE
        remaining = [link._envelopes.get_nowait() for _ in range(ENVELOPE_QUEUE_SIZE)]
        assert remaining[-1] is None
        await link.close()
