"""
Mesh side of the Meshtastic IRC bridge

Node name resolution, packet translation, serial device discovery and the
transports that reach the mesh network.
"""

from .node_directory import NodeDirectory
from .packet_translator import PacketTranslator
from .transport import (
    MeshTransport, TransportError, TransportConnectError, TransportClosedError,
    TransportStatus, TransportStats, create_transport
)

__all__ = [
    'NodeDirectory', 'PacketTranslator', 'MeshTransport', 'TransportError',
    'TransportConnectError', 'TransportClosedError', 'TransportStatus',
    'TransportStats', 'create_transport'
]
