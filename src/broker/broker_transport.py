"""
Broker Mesh Transport

Relays through an MQTT broker that carries the Meshtastic wire protocol.
Packets travel inside serialized ServiceEnvelope protobufs. Connection
problems never end the relay: they are logged and the loop backs off while
paho reconnects.
"""

import asyncio
from typing import Any, Callable, Dict

import paho.mqtt.client as mqtt
from google.protobuf.message import DecodeError
from meshtastic.protobuf import mesh_pb2, mqtt_pb2

from core.config import BrokerTransportConfig
from core.tasks import run_until_first_exit
from mesh.transport import (
    MeshTransport, TransportClosedError, TransportConnectError, TransportError,
    TransportStatus
)
from .mqtt_client import MQTTClient, SessionEvent, SessionEventType


SUBSCRIBE_QOS = 1
PUBLISH_QOS = 1


class BrokerTransport(MeshTransport):
    """Mesh transport over an MQTT broker"""

    transport_type = "broker"

    def __init__(self, config: BrokerTransportConfig, channel: int,
                 client_factory: Callable[..., MQTTClient] = MQTTClient):
        super().__init__(channel)
        self.config = config
        self.client = client_factory(config, logger=self.logger)
        self.publish_topic = config.resolve_publish_topic()

    @property
    def endpoint(self) -> str:
        return f"{self.config.address}:{self.config.port}"

    async def connect(self):
        self.status = TransportStatus.CONNECTING
        self.stats.connection_attempts += 1

        connected = await self.client.connect()
        if not connected:
            self.status = TransportStatus.FAILED
            raise TransportConnectError(f"Could not connect to MQTT broker at {self.endpoint}")

        self.client.subscribe(self.config.topic, qos=SUBSCRIBE_QOS)
        self._mark_connected()
        self.logger.info(f"Subscribed to MQTT topic: {self.config.topic}")
        self.logger.info(f"Publishing to MQTT topic: {self.publish_topic}")

    async def run(self, outbound: asyncio.Queue, inbound: asyncio.Queue):
        self.logger.info(f"MQTT handler run loop started, listening on channel {self.channel}")
        await run_until_first_exit(
            self._poll_events(inbound),
            self._send_outbound(outbound),
        )
        raise TransportClosedError(f"MQTT relay for {self.endpoint} stopped")

    async def _poll_events(self, inbound: asyncio.Queue):
        while True:
            event = await self.client.next_event()
            await self._handle_event(event, inbound)

    async def _handle_event(self, event: SessionEvent, inbound: asyncio.Queue):
        """React to one session event"""
        if event.type is SessionEventType.MESSAGE:
            await self._handle_publish(event.topic, event.payload, inbound)

        elif event.type is SessionEventType.CONNECTED:
            if self.status != TransportStatus.CONNECTED:
                self._mark_connected()
                self.logger.info(f"Reconnected to MQTT broker at {self.endpoint}")

        elif event.type in (SessionEventType.DISCONNECTED, SessionEventType.CONNECT_FAILED):
            self.status = TransportStatus.RECONNECTING
            self.logger.error(
                f"MQTT connection error: {event.reason}. "
                f"Retrying in {self.config.retry_delay}s"
            )
            await asyncio.sleep(self.config.retry_delay)

    async def _handle_publish(self, topic: str, payload: bytes, inbound: asyncio.Queue):
        if not mqtt.topic_matches_sub(self.config.topic, topic):
            self.logger.debug(f"Ignoring message on unrelated topic {topic}")
            return

        envelope = mqtt_pb2.ServiceEnvelope()
        try:
            envelope.ParseFromString(payload)
        except DecodeError as e:
            self.stats.packets_dropped += 1
            self.logger.debug(f"Failed to decode ServiceEnvelope on {topic}: {e}")
            return

        if not envelope.HasField('packet'):
            self.stats.packets_dropped += 1
            self.logger.debug(f"ServiceEnvelope on {topic} carries no packet")
            return

        await self._handle_packet(envelope.packet, inbound)

    async def send_packet(self, packet: mesh_pb2.MeshPacket):
        envelope = mqtt_pb2.ServiceEnvelope(
            packet=packet,
            channel_id=self.config.channel_name,
            gateway_id=self.config.gateway_id,
        )
        published = await self.client.publish(
            self.publish_topic,
            envelope.SerializeToString(),
            qos=PUBLISH_QOS,
            retain=False
        )
        if not published:
            raise TransportError(f"Failed to publish to {self.publish_topic}")

    async def close(self):
        await self.client.disconnect()
        self.status = TransportStatus.CLOSED
        self.logger.info(f"Broker transport for {self.endpoint} closed")

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status['topic'] = self.config.topic
        status['publish_topic'] = self.publish_topic
        status['mqtt'] = self.client.get_stats()
        return status
