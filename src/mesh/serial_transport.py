"""
Serial Mesh Transport

Relays through a Meshtastic radio attached over USB serial. Received text
that asked for an acknowledgement is answered with a routing reply.
"""

import asyncio
from typing import Any, Callable, Dict

from meshtastic.protobuf import mesh_pb2

from core.config import SerialTransportConfig
from core.tasks import run_until_first_exit
from .radio_link import RadioLink
from .transport import (
    MeshTransport, TransportClosedError, TransportConnectError, TransportError,
    TransportStatus
)


BUSY_PORT_HINT = (
    "Serial port {path} is busy. Make sure no other Meshtastic apps are running.\n"
    "Common causes:\n"
    "  - Meshtastic Python CLI is running\n"
    "  - Meshtastic web interface is open\n"
    "  - Another serial terminal is connected\n"
    "Try: lsof {path} (on macOS/Linux) to see what's using it"
)

_BUSY_MARKERS = (
    'device or resource busy',
    'resource temporarily unavailable',
    'could not exclusively lock port',
    'access is denied',
)


def is_port_busy(error: BaseException) -> bool:
    """Check if an open failure means another program holds the port"""
    message = str(error).lower()
    return any(marker in message for marker in _BUSY_MARKERS)


class SerialTransport(MeshTransport):
    """Mesh transport over a directly attached radio"""

    transport_type = "serial"

    def __init__(self, config: SerialTransportConfig, channel: int,
                 link_factory: Callable[..., RadioLink] = RadioLink):
        super().__init__(channel)
        self.config = config
        self.link_factory = link_factory
        self.link = None

    @property
    def endpoint(self) -> str:
        return self.config.path

    async def connect(self):
        self.status = TransportStatus.CONNECTING
        self.stats.connection_attempts += 1
        self.logger.info(f"Connecting to Meshtastic device at {self.config.path}")

        link = self.link_factory(self.config.path, timeout=self.config.connect_timeout,
                                 logger=self.logger)
        try:
            await link.open()
        except Exception as e:
            self.status = TransportStatus.FAILED
            if is_port_busy(e):
                raise TransportConnectError(BUSY_PORT_HINT.format(path=self.config.path)) from e
            raise TransportConnectError(
                f"Failed to open serial port {self.config.path}: {e}"
            ) from e

        self.link = link
        self._mark_connected()
        self.logger.info("Meshtastic device connected")

    async def run(self, outbound: asyncio.Queue, inbound: asyncio.Queue):
        self.logger.info(f"Meshtastic handler run loop started, listening on channel {self.channel}")

        while True:
            try:
                await run_until_first_exit(
                    self._receive_envelopes(inbound),
                    self._send_outbound(outbound),
                )
            except TransportClosedError as e:
                self.status = TransportStatus.FAILED
                if not self.config.reconnect_enabled:
                    raise
                self.logger.warning(
                    f"{e}. Reconnecting in {self.config.reconnect_delay}s"
                )
                await self._reconnect()
            else:
                raise TransportClosedError(f"Serial relay for {self.config.path} stopped")

    async def _reconnect(self):
        """Reopen the device until it succeeds"""
        await self._close_link()
        while True:
            self.status = TransportStatus.RECONNECTING
            await asyncio.sleep(self.config.reconnect_delay)
            try:
                await self.connect()
                return
            except TransportConnectError as e:
                self.logger.error(
                    f"Reconnect to {self.config.path} failed: {e}. "
                    f"Retrying in {self.config.reconnect_delay}s"
                )

    async def _receive_envelopes(self, inbound: asyncio.Queue):
        while True:
            envelope = await self.link.next_envelope()
            if envelope is None:
                raise TransportClosedError(f"Serial link to {self.config.path} was lost")
            await self._handle_envelope(envelope, inbound)

    async def _handle_envelope(self, envelope: mesh_pb2.FromRadio, inbound: asyncio.Queue):
        """Dispatch one envelope from the radio"""
        kind = envelope.WhichOneof('payload_variant')

        if kind == 'packet':
            packet = envelope.packet
            self.logger.debug(
                f"Received MeshPacket on channel {packet.channel}, configured channel is {self.channel}"
            )
            await self._handle_packet(packet, inbound)
            if self.translator.should_acknowledge(packet):
                await self._send_ack(packet)

        elif kind == 'node_info':
            self.translator.learn_node_info(envelope.node_info)

        elif kind == 'my_info':
            self.logger.info(f"Connected to Meshtastic node: ID {envelope.my_info.my_node_num:08x}")

        else:
            self.logger.debug(f"Received non-packet payload: {kind}")

    async def _send_ack(self, packet: mesh_pb2.MeshPacket):
        ack = self.translator.build_ack(packet)
        try:
            await self.send_packet(ack)
        except TransportClosedError:
            raise
        except TransportError as e:
            self.logger.error(f"Failed to send ACK for packet {packet.id}: {e}")
            return

        self.stats.acks_sent += 1
        self.logger.debug(f"Sent ACK for packet {packet.id} to {ack.to:08x}")

    async def send_packet(self, packet: mesh_pb2.MeshPacket):
        if self.link is None:
            raise TransportClosedError(f"Serial link to {self.config.path} is not open")
        await self.link.send(packet)

    async def _close_link(self):
        link, self.link = self.link, None
        if link is not None:
            await link.close()

    async def close(self):
        await self._close_link()
        self.status = TransportStatus.CLOSED
        self.logger.info(f"Serial transport for {self.config.path} closed")

    def get_status(self) -> Dict[str, Any]:
        status = super().get_status()
        status['radio_queue_dropped'] = getattr(self.link, 'dropped', 0) if self.link else 0
        return status
