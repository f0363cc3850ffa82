"""
Mesh Transport contract

A transport owns one connection to the mesh network, a NodeDirectory and a
PacketTranslator. The orchestrator only talks to this base class; the serial
and broker variants are selected once at startup by create_transport().
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from meshtastic.protobuf import mesh_pb2

from core.config import BrokerTransportConfig, MeshConfig, SerialTransportConfig
from core.logging import get_logger
from models.message import RelayMessage
from .node_directory import NodeDirectory
from .packet_translator import PacketTranslator


class TransportError(Exception):
    """Base class for mesh transport failures"""
    pass


class TransportConnectError(TransportError):
    """The transport could not establish its connection"""
    pass


class TransportClosedError(TransportError):
    """The connection ended or was used after it closed"""
    pass


class TransportStatus(Enum):
    """Transport connection status"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class TransportStats:
    """Transport statistics"""
    messages_sent: int = 0
    messages_received: int = 0
    acks_sent: int = 0
    packets_dropped: int = 0
    send_failures: int = 0
    connection_attempts: int = 0
    successful_connections: int = 0
    last_message_time: Optional[datetime] = None
    uptime_start: Optional[datetime] = None

    def get_uptime(self) -> Optional[timedelta]:
        """Get transport uptime"""
        if self.uptime_start:
            return datetime.utcnow() - self.uptime_start
        return None


class MeshTransport(ABC):
    """Abstract base class for mesh transports"""

    transport_type = "mesh"

    def __init__(self, channel: int):
        self.channel = channel
        self.logger = get_logger(f'mesh.{self.transport_type}')
        self.node_directory = NodeDirectory(self.logger)
        self.translator = PacketTranslator(channel, self.node_directory, self.logger)

        self.status = TransportStatus.DISCONNECTED
        self.stats = TransportStats()

    @property
    @abstractmethod
    def endpoint(self) -> str:
        """Human readable description of what the transport connects to"""
        pass

    @abstractmethod
    async def connect(self):
        """
        Establish the connection.

        Raises:
            TransportConnectError: if the connection cannot be established
        """
        pass

    @abstractmethod
    async def run(self, outbound: asyncio.Queue, inbound: asyncio.Queue):
        """
        Relay until the transport fails.

        Consumes RelayMessage items from outbound and produces chat text on
        inbound. Never returns normally.
        """
        pass

    @abstractmethod
    async def send_packet(self, packet: mesh_pb2.MeshPacket):
        """Transmit one mesh packet"""
        pass

    @abstractmethod
    async def close(self):
        """Release the connection"""
        pass

    def _mark_connected(self):
        self.status = TransportStatus.CONNECTED
        self.stats.successful_connections += 1
        self.stats.uptime_start = datetime.utcnow()

    async def send_message(self, message: RelayMessage):
        """Encode and transmit a chat message"""
        packet = self.translator.encode(message)
        await self.send_packet(packet)
        self.stats.messages_sent += 1
        self.logger.info(f"Sent to mesh: {message.to_mesh_text()}")

    async def _send_outbound(self, outbound: asyncio.Queue):
        """
        Drain chat messages onto the mesh.

        A failed send is logged and the message discarded; only a closed
        link ends the loop.
        """
        while True:
            message = await outbound.get()
            self.logger.info(
                f"Received message from IRC to send to Meshtastic: {message.sender} - {message.content}"
            )
            try:
                await self.send_message(message)
            except TransportClosedError:
                raise
            except TransportError as e:
                self.stats.send_failures += 1
                self.logger.error(f"Error sending to Meshtastic: {e}")

    async def _handle_packet(self, packet: mesh_pb2.MeshPacket, inbound: asyncio.Queue) -> bool:
        """
        Run a received packet through the translator.

        Returns:
            True if chat text was produced
        """
        if self.translator.learn_from_packet(packet):
            return False

        text = self.translator.decode(packet)
        if text is None:
            self.stats.packets_dropped += 1
            return False

        self.stats.messages_received += 1
        self.stats.last_message_time = datetime.utcnow()
        self.logger.info(f"Received Meshtastic message: {text}")
        await inbound.put(text)
        return True

    def get_status(self) -> Dict[str, Any]:
        """Get transport status information"""
        uptime = self.stats.get_uptime()
        return {
            'type': self.transport_type,
            'endpoint': self.endpoint,
            'channel': self.channel,
            'status': self.status.value,
            'known_nodes': len(self.node_directory),
            'stats': {
                'messages_sent': self.stats.messages_sent,
                'messages_received': self.stats.messages_received,
                'acks_sent': self.stats.acks_sent,
                'packets_dropped': self.stats.packets_dropped,
                'send_failures': self.stats.send_failures,
                'connection_attempts': self.stats.connection_attempts,
                'successful_connections': self.stats.successful_connections,
                'last_message_time': self.stats.last_message_time.isoformat() if self.stats.last_message_time else None,
                'uptime_seconds': uptime.total_seconds() if uptime else 0
            }
        }


def create_transport(mesh_config: MeshConfig) -> MeshTransport:
    """
    Build the transport variant selected by the configuration.

    Raises:
        ValueError: if no transport has been resolved yet
    """
    transport_config = mesh_config.transport

    if isinstance(transport_config, BrokerTransportConfig):
        from broker.broker_transport import BrokerTransport
        return BrokerTransport(transport_config, mesh_config.channel)

    if isinstance(transport_config, SerialTransportConfig):
        from .serial_transport import SerialTransport
        return SerialTransport(transport_config, mesh_config.channel)

    raise ValueError("No mesh transport configured; resolve a serial device first")
