"""
Serial device auto-detection

Enumerates serial ports, ranks them by how much they look like a Meshtastic
radio and probes the candidates until one answers like a radio does.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from serial.tools import list_ports

from core.config import DiscoveryConfig
from .radio_link import RadioLink


logger = logging.getLogger(__name__)


# Known Meshtastic USB vendor/product ids
MESHTASTIC_USB_IDS: Tuple[Tuple[int, int], ...] = (
    (0x239a, 0x4000),  # RAK4631 (Adafruit)
    (0x239a, 0x8029),  # RAK4631 (Adafruit) alternate
    (0x303a, 0x1001),  # ESP32-S3
    (0x10c4, 0xea60),  # CP210x UART bridge
    (0x0403, 0x6001),  # FTDI FT232
    (0x0403, 0x6015),  # FTDI FT-X series
    (0x1a86, 0x55d4),  # CH9102
    (0x2e8a, 0x000a),  # Raspberry Pi Pico
)

# Matched case-insensitively against the USB manufacturer string
MESHTASTIC_MANUFACTURERS: Tuple[str, ...] = (
    "meshtastic",
    "rak",
    "lilygo",
    "heltec",
)

# Matched case-sensitively against the USB product string
MESHTASTIC_PRODUCTS: Tuple[str, ...] = (
    "RAK4631",
    "LILYGO",
    "T-Beam",
    "T-Echo",
    "Heltec",
    "Nano G1",
    "Station G1",
    "CP210",
    "CH910",
    "FT232",
    "Meshtastic",
    "WisBlock",
)

# Generic USB-serial bridge chips found on many radio boards
USB_SERIAL_CHIPS: Tuple[Tuple[int, int], ...] = (
    (0x10c4, 0xea60),  # CP210x
    (0x1a86, 0x7523),  # CH340
    (0x1a86, 0x55d4),  # CH9102
    (0x0403, 0x6001),  # FTDI
    (0x0403, 0x6015),  # FTDI FT-X
)

# Matched case-insensitively against the USB product string
MICROCONTROLLER_PRODUCTS: Tuple[str, ...] = (
    "esp32",
    "usb",
    "uart",
)

EXCLUDED_PORT_NAMES: Tuple[str, ...] = (
    "Bluetooth",
)

# First envelopes that only a Meshtastic radio sends
VERIFIED_ENVELOPE_KINDS = frozenset({'my_info', 'node_info', 'config', 'packet'})


class PortClass(Enum):
    """How likely a port is to be a Meshtastic radio"""
    LIKELY = "likely"
    POSSIBLE = "possible"
    UNRELATED = "unrelated"


@dataclass(frozen=True)
class PortDescriptor:
    """What the operating system reports about a serial port"""
    device: str
    vid: Optional[int] = None
    pid: Optional[int] = None
    manufacturer: Optional[str] = None
    product: Optional[str] = None
    serial_number: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_list_port_info(cls, info) -> 'PortDescriptor':
        return cls(
            device=info.device,
            vid=info.vid,
            pid=info.pid,
            manufacturer=info.manufacturer,
            product=info.product,
            serial_number=info.serial_number,
            description=info.description,
        )

    @property
    def is_usb(self) -> bool:
        return self.vid is not None and self.pid is not None


class DeviceDiscoveryError(Exception):
    """No serial port could be verified as a Meshtastic radio"""

    def __init__(self, message: str, ports: Sequence[PortDescriptor] = ()):
        super().__init__(message)
        self.ports = list(ports)

    def report(self) -> str:
        """Get the error message followed by every port that was seen"""
        lines = [str(self)]
        if self.ports:
            lines.append("Available ports:")
            lines.extend(f"  {port.device} - {describe_port(port)}" for port in self.ports)
        else:
            lines.append("No serial ports found")
        return "\n".join(lines)


NO_DEVICE_MESSAGE = (
    "No Meshtastic devices found. Please check:\n"
    "- Device is connected via USB\n"
    "- Device is powered on\n"
    "- No other apps are using the device\n"
    "Use --serial-port to specify manually"
)


def is_excluded(port: PortDescriptor) -> bool:
    """Check for ports that are never radios, such as wireless adapters"""
    return any(name in port.device for name in EXCLUDED_PORT_NAMES)


def is_likely_meshtastic(port: PortDescriptor) -> bool:
    if not port.is_usb:
        return False

    if (port.vid, port.pid) in MESHTASTIC_USB_IDS:
        return True

    if port.manufacturer:
        manufacturer = port.manufacturer.lower()
        if any(keyword in manufacturer for keyword in MESHTASTIC_MANUFACTURERS):
            return True

    if port.product:
        if any(keyword in port.product for keyword in MESHTASTIC_PRODUCTS):
            return True

    if port.serial_number:
        if port.serial_number.startswith("M") or "mesh" in port.serial_number:
            return True

    return False


def is_possible_meshtastic(port: PortDescriptor) -> bool:
    if not port.is_usb:
        return False

    if (port.vid, port.pid) in USB_SERIAL_CHIPS:
        return True

    if port.product:
        product = port.product.lower()
        if any(keyword in product for keyword in MICROCONTROLLER_PRODUCTS):
            return True

    return False


def classify_port(port: PortDescriptor) -> PortClass:
    """Rank a port as a Meshtastic candidate"""
    if is_excluded(port):
        return PortClass.UNRELATED
    if is_likely_meshtastic(port):
        return PortClass.LIKELY
    if is_possible_meshtastic(port):
        return PortClass.POSSIBLE
    return PortClass.UNRELATED


def describe_port(port: PortDescriptor) -> str:
    """Format manufacturer, product and USB ids for display"""
    if not port.is_usb:
        return "Unknown device"
    manufacturer = port.manufacturer or "Unknown"
    product = port.product or "Unknown"
    return f"{manufacturer} - {product} (VID:{port.vid:04X} PID:{port.pid:04X})"


def enumerate_ports() -> List[PortDescriptor]:
    """List the serial ports present on this machine"""
    return [PortDescriptor.from_list_port_info(info) for info in list_ports.comports()]


async def probe_port(path: str, config: Optional[DiscoveryConfig] = None,
                     link_factory: Callable[..., RadioLink] = RadioLink) -> bool:
    """
    Check if a radio answers on a port.

    The port must open within config.connect_timeout. The radio handshake
    then runs in the background and the first envelope it produces must
    arrive within config.envelope_timeout; the link is closed either way.
    """
    config = config or DiscoveryConfig()
    link = link_factory(path, logger=logger)

    try:
        await asyncio.wait_for(link.open(wait_for_config=False), timeout=config.connect_timeout)
    except asyncio.TimeoutError:
        logger.info(f"Connection timeout on {path}")
        return False
    except Exception as e:
        logger.info(f"Failed to open {path}: {e}")
        return False

    try:
        envelope = await link.first_envelope(config.envelope_timeout)
    finally:
        await link.close()

    if envelope is None:
        logger.info(f"No valid response from {path}")
        return False

    if envelope.WhichOneof('payload_variant') in VERIFIED_ENVELOPE_KINDS:
        logger.info(f"Verified Meshtastic device on {path}")
        return True

    logger.info(f"Non-Meshtastic response on {path}")
    return False


async def discover_device(config: Optional[DiscoveryConfig] = None,
                          port_lister: Callable[[], List[PortDescriptor]] = enumerate_ports,
                          probe: Optional[Callable[[str, DiscoveryConfig], Awaitable[bool]]] = None) -> str:
    """
    Find the serial path of an attached Meshtastic radio.

    Every likely port is probed before any possible one; the first port
    that verifies wins.

    Raises:
        DeviceDiscoveryError: if no port verifies
    """
    config = config or DiscoveryConfig()
    probe = probe or probe_port

    logger.info("Auto-detecting Meshtastic serial port...")

    try:
        ports = port_lister()
    except Exception as e:
        raise DeviceDiscoveryError(f"Failed to list serial ports: {e}") from e

    if not ports:
        raise DeviceDiscoveryError("No serial ports found")

    logger.info(f"Found {len(ports)} serial port(s) to check")

    likely: List[str] = []
    possible: List[str] = []
    for port in ports:
        port_class = classify_port(port)
        if port_class is PortClass.LIKELY:
            logger.info(f"Found likely Meshtastic device: {port.device} - {describe_port(port)}")
            likely.append(port.device)
        elif port_class is PortClass.POSSIBLE:
            logger.info(f"Found possible Meshtastic device: {port.device} - {describe_port(port)}")
            possible.append(port.device)

    for path in likely:
        logger.info(f"Checking likely Meshtastic port: {path}")
        if await probe(path, config):
            return path

    for path in possible:
        logger.info(f"Checking possible port: {path}")
        if await probe(path, config):
            return path

    logger.info("No Meshtastic devices detected. Available ports:")
    for port in ports:
        logger.info(f"  {port.device} - {describe_port(port)}")

    raise DeviceDiscoveryError(NO_DEVICE_MESSAGE, ports)
