"""
Asyncio adapter around the meshtastic serial interface

The meshtastic library runs its own reader thread and announces what it
receives over pypubsub. RadioLink listens to those topics for one interface,
turns each event into a FromRadio envelope and hands it to the event loop
through call_soon_threadsafe. A lost connection is signalled with None.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import meshtastic.serial_interface
from meshtastic.protobuf import mesh_pb2
from pubsub import pub

from .transport import TransportClosedError, TransportError

# Envelopes waiting for the transport; packets past this are dropped
ENVELOPE_QUEUE_SIZE = 1000


class RadioLink:
    """One serial connection to a Meshtastic radio"""

    def __init__(self, path: str, timeout: int = 300,
                 interface_factory: Optional[Callable[..., Any]] = None,
                 logger: Optional[logging.Logger] = None):
        self.path = path
        self.timeout = timeout
        self.interface_factory = interface_factory or meshtastic.serial_interface.SerialInterface
        self.logger = logger or logging.getLogger(__name__)

        self.interface = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._envelopes: Optional[asyncio.Queue] = None
        self.handshake: Optional[threading.Thread] = None
        self.dropped = 0
        self._subscriptions: List[Tuple[str, Callable]] = []

    async def open(self, wait_for_config: bool = True):
        """
        Open the serial device and start the radio handshake.

        With wait_for_config the call returns once the radio has sent its
        node database and configuration. Otherwise it returns as soon as the
        device is open; the handshake carries on in a background thread and
        whatever the radio reports meanwhile arrives as envelopes.
        """
        self._loop = asyncio.get_running_loop()
        self._envelopes = asyncio.Queue(maxsize=ENVELOPE_QUEUE_SIZE)

        self.interface = await self._loop.run_in_executor(None, self._create_interface)
        self._register_listeners()

        try:
            if wait_for_config:
                await self._loop.run_in_executor(None, self._start_and_wait)
            else:
                self._start_handshake()
        except BaseException:
            await self.close()
            raise

    def _create_interface(self):
        return self.interface_factory(devPath=self.path, connectNow=False, timeout=self.timeout)

    def _start_and_wait(self):
        self.interface.connect()
        self.interface.waitForConfig()

    def _start_handshake(self):
        # Daemon thread: connect() blocks until the config download ends,
        # which must not hold up loop shutdown
        self.handshake = threading.Thread(
            target=self._run_handshake,
            args=(self.interface,),
            name=f"radio-handshake-{self.path}",
            daemon=True
        )
        self.handshake.start()

    def _run_handshake(self, interface):
        try:
            interface.connect()
        except Exception as e:
            if interface is self.interface:
                self.logger.info(f"Radio handshake on {self.path} failed: {e}")
                self._deliver(None)
            else:
                self.logger.debug(f"Radio handshake on {self.path} ended after close: {e}")

    def _register_listeners(self):
        self._subscribe("meshtastic.receive", self._on_receive)
        self._subscribe("meshtastic.node.updated", self._on_node_updated)
        self._subscribe("meshtastic.connection.established", self._on_connection_established)
        self._subscribe("meshtastic.connection.lost", self._on_connection_lost)

    def _subscribe(self, topic: str, handler: Callable):
        pub.subscribe(handler, topic)
        self._subscriptions.append((topic, handler))

    def _remove_listeners(self):
        while self._subscriptions:
            topic, handler = self._subscriptions.pop()
            pub.unsubscribe(handler, topic)

    # pypubsub listeners, called on the meshtastic reader thread

    def _on_receive(self, packet: Dict[str, Any], interface: Any):
        if interface is not self.interface:
            return
        raw = packet.get('raw')
        if raw is None:
            return
        self._deliver(mesh_pb2.FromRadio(packet=raw))

    def _on_node_updated(self, node: Dict[str, Any], interface: Any):
        if interface is not self.interface:
            return
        num = node.get('num')
        if num is None:
            return

        node_info = mesh_pb2.NodeInfo(num=num)
        user = node.get('user')
        if user:
            node_info.user.short_name = user.get('shortName', '')
            node_info.user.long_name = user.get('longName', '')
        self._deliver(mesh_pb2.FromRadio(node_info=node_info))

    def _on_connection_established(self, interface: Any):
        if interface is not self.interface:
            return
        my_info = getattr(interface, 'myInfo', None)
        if my_info is not None:
            self._deliver(mesh_pb2.FromRadio(my_info=my_info))

    def _on_connection_lost(self, interface: Any):
        if interface is not self.interface:
            return
        self._deliver(None)

    def _deliver(self, envelope: Optional[mesh_pb2.FromRadio]):
        try:
            self._loop.call_soon_threadsafe(self._enqueue, envelope)
        except RuntimeError:
            self.logger.debug(f"Dropping radio event for {self.path}: event loop is closed")

    def _enqueue(self, envelope: Optional[mesh_pb2.FromRadio]):
        """Queue an envelope; a lost connection always gets through"""
        if self._envelopes.full():
            if envelope is not None:
                self.dropped += 1
                self.logger.warning(f"Radio queue for {self.path} full, dropping envelope")
                return
            self._envelopes.get_nowait()
            self.dropped += 1
        self._envelopes.put_nowait(envelope)

    async def next_envelope(self) -> Optional[mesh_pb2.FromRadio]:
        """Wait for the next envelope; None means the connection was lost"""
        return await self._envelopes.get()

    async def first_envelope(self, timeout: float) -> Optional[mesh_pb2.FromRadio]:
        """
        Wait up to timeout for the first thing the radio reports.

        The radio's own node record is not announced over pubsub, so it is
        picked up from the interface once the library has stored it.
        """
        deadline = self._loop.time() + timeout
        while True:
            if not self._envelopes.empty():
                return self._envelopes.get_nowait()

            my_info = getattr(self.interface, 'myInfo', None)
            if my_info is not None:
                return mesh_pb2.FromRadio(my_info=my_info)

            if self._loop.time() >= deadline:
                return None
            await asyncio.sleep(0.05)

    @property
    def is_connected(self) -> bool:
        if self.interface is None:
            return False
        connected = getattr(self.interface, 'isConnected', None)
        return connected is not None and connected.is_set()

    async def send(self, packet: mesh_pb2.MeshPacket):
        """
        Write one packet to the radio.

        Raises:
            TransportClosedError: if the link is not connected
            TransportError: if the write fails
        """
        if not self.is_connected:
            raise TransportClosedError(f"Serial link to {self.path} is closed")

        to_radio = mesh_pb2.ToRadio(packet=packet)
        loop = asyncio.get_running_loop()
        try:
            # The public send helpers assign packet ids and cannot carry request_id
            await loop.run_in_executor(None, self.interface._sendToRadio, to_radio)
        except (OSError, ValueError) as e:
            raise TransportError(f"Failed to write to {self.path}: {e}") from e

    async def close(self):
        """Unsubscribe and close the serial device"""
        self._remove_listeners()

        interface, self.interface = self.interface, None
        if interface is None:
            return

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, interface.close)
        except Exception as e:
            self.logger.warning(f"Error closing serial interface {self.path}: {e}")
