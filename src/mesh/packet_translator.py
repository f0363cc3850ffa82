"""
Packet Translator

Maps relay messages to Meshtastic mesh packets and back, independent of the
transport that carries them. Both transports feed received packets through
the same translator, so channel isolation, loop prevention and node-name
resolution behave identically on serial and MQTT links.
"""

import logging
from typing import Optional

from google.protobuf.message import DecodeError
from meshtastic.protobuf import mesh_pb2, portnums_pb2

from models.message import OUTBOUND_TAG_PREFIX, RelayMessage, format_inbound_text
from .node_directory import NodeDirectory


BROADCAST_NUM = 0xFFFFFFFF

# Acknowledgements always travel on the primary channel
ACK_CHANNEL = 0


def sender_id(packet: mesh_pb2.MeshPacket) -> int:
    """Get the sending node id ('from' is a Python keyword)"""
    return getattr(packet, 'from')


def is_echo(text: str) -> bool:
    """Check if mesh text is a copy of something the bridge transmitted"""
    return text.startswith(OUTBOUND_TAG_PREFIX)


class PacketTranslator:
    """
    Converts between RelayMessage and MeshPacket for one mesh channel.

    The translator holds no state of its own; node names are read from and
    learned into the NodeDirectory owned by the transport.
    """

    def __init__(self, channel: int, node_directory: NodeDirectory,
                 logger: Optional[logging.Logger] = None):
        self.channel = channel
        self.node_directory = node_directory
        self.logger = logger or logging.getLogger(__name__)

    def encode(self, message: RelayMessage) -> mesh_pb2.MeshPacket:
        """
        Build the broadcast text packet for a chat message.

        Sender node id and packet id stay zero; the radio assigns both.
        """
        packet = mesh_pb2.MeshPacket()
        packet.to = BROADCAST_NUM
        packet.channel = self.channel
        packet.id = 0
        packet.want_ack = False
        packet.priority = mesh_pb2.MeshPacket.Priority.DEFAULT
        packet.decoded.portnum = portnums_pb2.PortNum.TEXT_MESSAGE_APP
        packet.decoded.payload = message.to_mesh_text().encode('utf-8')
        packet.decoded.want_response = False
        return packet

    def extract_text(self, packet: mesh_pb2.MeshPacket) -> Optional[str]:
        """
        Get the text of a relay-eligible packet.

        Eligible packets are on the configured channel, carry a decoded
        (not encrypted) text-message payload, and that payload is non-empty
        valid UTF-8. Anything else yields None.
        """
        if packet.channel != self.channel:
            self.logger.debug(
                f"Ignoring packet from channel {packet.channel}, configured channel is {self.channel}"
            )
            return None

        if packet.WhichOneof('payload_variant') != 'decoded':
            self.logger.debug(f"Ignoring encrypted packet from {sender_id(packet):08x}")
            return None

        data = packet.decoded
        if data.portnum != portnums_pb2.PortNum.TEXT_MESSAGE_APP:
            return None

        if not data.payload:
            return None

        try:
            return data.payload.decode('utf-8')
        except UnicodeDecodeError:
            self.logger.debug(f"Dropping non-UTF-8 text from {sender_id(packet):08x}")
            return None

    def decode(self, packet: mesh_pb2.MeshPacket) -> Optional[str]:
        """
        Render a received packet as chat text.

        Returns:
            "[mesh-{sender}]: {text}", or None if the packet is not
            relay-eligible or is an echo of bridge traffic
        """
        text = self.extract_text(packet)
        if text is None:
            return None

        if is_echo(text):
            self.logger.debug(f"Not relaying echoed bridge message: {text}")
            return None

        sender = self.node_directory.display_name(sender_id(packet))
        return format_inbound_text(sender, text)

    def should_acknowledge(self, packet: mesh_pb2.MeshPacket) -> bool:
        """Check if a received text packet asked for an acknowledgement"""
        if not packet.want_ack or packet.id == 0:
            return False
        return self.extract_text(packet) is not None

    def build_ack(self, packet: mesh_pb2.MeshPacket) -> mesh_pb2.MeshPacket:
        """Build the routing reply acknowledging a received packet"""
        ack = mesh_pb2.MeshPacket()
        ack.to = sender_id(packet)
        ack.channel = ACK_CHANNEL
        ack.id = 0
        ack.want_ack = False
        ack.priority = mesh_pb2.MeshPacket.Priority.ACK
        ack.decoded.portnum = portnums_pb2.PortNum.ROUTING_APP
        ack.decoded.payload = b''
        ack.decoded.want_response = False
        ack.decoded.request_id = packet.id
        return ack

    def learn_node_info(self, node_info: mesh_pb2.NodeInfo) -> bool:
        """Record a node database entry reported by the radio"""
        if not node_info.HasField('user'):
            return False
        return self.node_directory.update(node_info.num, node_info.user.short_name)

    def learn_from_packet(self, packet: mesh_pb2.MeshPacket) -> bool:
        """
        Record the identity announced by an over-the-air node-info packet.

        Returns:
            True if the packet was a node-info packet (consumed, whether or
            not it carried a usable name)
        """
        if packet.WhichOneof('payload_variant') != 'decoded':
            return False
        if packet.decoded.portnum != portnums_pb2.PortNum.NODEINFO_APP:
            return False
        if packet.channel != self.channel:
            return True

        user = mesh_pb2.User()
        try:
            user.ParseFromString(packet.decoded.payload)
        except DecodeError as e:
            self.logger.debug(f"Malformed node info from {sender_id(packet):08x}: {e}")
            return True

        self.node_directory.update(sender_id(packet), user.short_name)
        return True
