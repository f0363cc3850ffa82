"""
Unit tests for the broker mesh transport

Uses FakeMQTTClient to script the broker session: ServiceEnvelope decoding,
topic filtering, publish topic derivation and connection error back-off.
"""

import asyncio
from dataclasses import replace
from functools import partial

import pytest
from meshtastic.protobuf import mqtt_pb2

from broker.broker_transport import BrokerTransport
from broker.mqtt_client import SessionEventType
from mesh.transport import TransportConnectError, TransportError, TransportStatus
from models.message import RelayMessage
from tests.mocks.external_service_mocks import FakeMQTTClient
from tests.mocks.meshtastic_mocks import make_nodeinfo_packet, make_text_packet


def service_envelope(packet) -> bytes:
    return mqtt_pb2.ServiceEnvelope(
        packet=packet, channel_id="LongFast", gateway_id="!a1b2c3d4"
    ).SerializeToString()


@pytest.fixture
def transport(broker_config):
    return BrokerTransport(broker_config, channel=0, client_factory=FakeMQTTClient)


async def run_until(transport, outbound, inbound, condition):
    task = asyncio.create_task(transport.run(outbound, inbound))
    for _ in range(200):
        if condition() or task.done():
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.unit
class TestBrokerConnect:

    @pytest.mark.asyncio
    async def test_connect_subscribes(self, transport):
        await transport.connect()

        assert transport.client.subscriptions == {"meshtastic/2/e/#": 1}
        assert transport.status == TransportStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_connect_failure(self, broker_config):
        transport = BrokerTransport(
            broker_config, 0, client_factory=partial(FakeMQTTClient, connect_result=False)
        )

        with pytest.raises(TransportConnectError, match="mqtt.example.net:1883"):
            await transport.connect()

        assert transport.status == TransportStatus.FAILED
        assert transport.client.subscriptions == {}


@pytest.mark.unit
class TestPublishTopic:

    def test_wildcard_topic_uses_prefix_channel_and_gateway(self, broker_config):
        transport = BrokerTransport(broker_config, 0, client_factory=FakeMQTTClient)

        assert transport.publish_topic == "meshtastic/2/e/LongFast/irc-bridge"

    def test_single_level_wildcard(self, broker_config):
        config = replace(broker_config, topic="msh/US/+/json", channel_name="Ops", gateway_id="gw")

        assert BrokerTransport(config, 0, client_factory=FakeMQTTClient).publish_topic == "msh/US/Ops/gw"

    def test_concrete_topic_is_reused(self, broker_config):
        config = replace(broker_config, topic="meshtastic/2/e/LongFast/!abcd")

        assert BrokerTransport(config, 0, client_factory=FakeMQTTClient).publish_topic == config.topic

    def test_explicit_publish_topic_wins(self, broker_config):
        config = replace(broker_config, publish_topic="custom/out")

        assert BrokerTransport(config, 0, client_factory=FakeMQTTClient).publish_topic == "custom/out"


@pytest.mark.unit
class TestBrokerRelay:

    @pytest.mark.asyncio
    async def test_envelope_text_is_relayed(self, transport):
        await transport.connect()
        transport.client.push_message("meshtastic/2/e/LongFast/!a1b2c3d4", service_envelope(make_text_packet("hi")))
        inbound = asyncio.Queue()

        await run_until(transport, asyncio.Queue(), inbound, lambda: not inbound.empty())

        assert inbound.get_nowait() == "[mesh-1234abcd]: hi"

    @pytest.mark.asyncio
    async def test_nodeinfo_envelope_names_sender(self, transport):
        await transport.connect()
        topic = "meshtastic/2/e/LongFast/!a1b2c3d4"
        transport.client.push_message(topic, service_envelope(make_nodeinfo_packet(0x1234abcd, "ALC")))
        transport.client.push_message(topic, service_envelope(make_text_packet("hi")))
        inbound = asyncio.Queue()

        await run_until(transport, asyncio.Queue(), inbound, lambda: not inbound.empty())

        assert inbound.get_nowait() == "[mesh-ALC]: hi"

    @pytest.mark.asyncio
    async def test_echo_and_garbage_are_dropped(self, transport):
        await transport.connect()
        topic = "meshtastic/2/e/LongFast/!a1b2c3d4"
        transport.client.push_message(topic, service_envelope(make_text_packet("[IRC-bob] hi")))
        transport.client.push_message(topic, b"\xff\xff\xff\xff")
        transport.client.push_message(topic, mqtt_pb2.ServiceEnvelope(channel_id="x").SerializeToString())
        transport.client.push_message(topic, service_envelope(make_text_packet("marker")))
        inbound = asyncio.Queue()

        await run_until(transport, asyncio.Queue(), inbound, lambda: not inbound.empty())

        assert inbound.get_nowait() == "[mesh-1234abcd]: marker"
        assert transport.stats.packets_dropped == 3

    @pytest.mark.asyncio
    async def test_unrelated_topic_is_ignored(self, broker_config):
        config = replace(broker_config, topic="meshtastic/2/e/LongFast/#")
        transport = BrokerTransport(config, 0, client_factory=FakeMQTTClient)
        await transport.connect()
        transport.client.push_message("meshtastic/2/e/Other/!x", service_envelope(make_text_packet("no")))
        transport.client.push_message("meshtastic/2/e/LongFast/!x", service_envelope(make_text_packet("yes")))
        inbound = asyncio.Queue()

        await run_until(transport, asyncio.Queue(), inbound, lambda: not inbound.empty())

        assert inbound.get_nowait() == "[mesh-1234abcd]: yes"
        assert inbound.empty()

    @pytest.mark.asyncio
    async def test_outbound_message_is_published_as_envelope(self, transport):
        await transport.connect()
        outbound = asyncio.Queue()
        await outbound.put(RelayMessage("alice", "hello"))

        await run_until(transport, outbound, asyncio.Queue(), lambda: bool(transport.client.published))

        topic, payload, qos, retain = transport.client.published[0]
        assert topic == "meshtastic/2/e/LongFast/irc-bridge"
        assert qos == 1
        assert retain is False
        envelope = mqtt_pb2.ServiceEnvelope()
        envelope.ParseFromString(payload)
        assert envelope.channel_id == "LongFast"
        assert envelope.gateway_id == "irc-bridge"
        assert envelope.packet.decoded.payload == b"[IRC-alice] hello"

    @pytest.mark.asyncio
    async def test_publish_failure_raises_transport_error(self, transport):
        await transport.connect()
        transport.client.publish_result = False

        with pytest.raises(TransportError, match="Failed to publish"):
            await transport.send_message(RelayMessage("a", "b"))

    @pytest.mark.asyncio
    async def test_connection_errors_do_not_end_relay(self, transport):
        await transport.connect()
        transport.client.push_event(SessionEventType.DISCONNECTED, reason="7")
        transport.client.push_event(SessionEventType.CONNECT_FAILED, reason="broker unreachable")
        transport.client.push_event(SessionEventType.CONNECTED)
        transport.client.push_message("meshtastic/2/e/x", service_envelope(make_text_packet("after")))
        inbound = asyncio.Queue()

        await run_until(transport, asyncio.Queue(), inbound, lambda: not inbound.empty())

        assert inbound.get_nowait() == "[mesh-1234abcd]: after"
        assert transport.status == TransportStatus.CONNECTED
        assert transport.stats.successful_connections == 2

    @pytest.mark.asyncio
    async def test_no_acknowledgements_over_broker(self, transport):
        await transport.connect()
        packet = make_text_packet("ack me", packet_id=55, want_ack=True)
        transport.client.push_message("meshtastic/2/e/x", service_envelope(packet))
        inbound = asyncio.Queue()

        await run_until(transport, asyncio.Queue(), inbound, lambda: not inbound.empty())

        assert transport.client.published == []
        assert transport.stats.acks_sent == 0

    @pytest.mark.asyncio
    async def test_close_disconnects(self, transport):
        await transport.connect()

        await transport.close()

        assert transport.client.disconnected
        assert transport.status == TransportStatus.CLOSED
        assert transport.get_status()['publish_topic'] == "meshtastic/2/e/LongFast/irc-bridge"
