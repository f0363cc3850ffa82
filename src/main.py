"""
Meshtastic IRC Bridge Main Application Entry Point

Parses the command line, loads configuration, finds the radio when none is
configured and runs the bridge until one side fails.
"""

import argparse
import asyncio
import dataclasses
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add src to Python path
sys.path.insert(0, str(Path(__file__).parent))

from core.config import (
    BridgeConfig, BrokerTransportConfig, ConfigurationError, ConfigurationManager,
    DEFAULT_CONFIG_FILE, DEFAULT_MQTT_PORT, DEFAULT_MQTT_TOPIC
)
from core.logging import initialize_logging, get_logger
from core.bridge import Bridge, BridgeTerminatedError
from mesh.device_discovery import (
    DeviceDiscoveryError, classify_port, describe_port, discover_device, enumerate_ports
)


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def parse_bool(value: str) -> bool:
    """argparse type for true/false flags"""
    lowered = value.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise argparse.ArgumentTypeError(f"expected true or false, got {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='meshtastic-irc-bridge',
        description='Bridge between Meshtastic and IRC'
    )
    parser.add_argument('-c', '--config', metavar='FILE', default=None,
                        help=f'Configuration file path (default: {DEFAULT_CONFIG_FILE})')
    parser.add_argument('--irc-server', help='IRC server address')
    parser.add_argument('--irc-port', type=int, help='IRC server port')
    parser.add_argument('--irc-channel', help='IRC channel to join')
    parser.add_argument('--irc-nick', help='IRC nickname')
    parser.add_argument('--irc-tls', type=parse_bool, metavar='true|false',
                        help='Use TLS/SSL for IRC connection')
    parser.add_argument('--serial-port', help='Meshtastic serial port')
    parser.add_argument('--meshtastic-channel', type=int, help='Meshtastic channel number')
    parser.add_argument('--mqtt-broker', help='MQTT broker address')
    parser.add_argument('--mqtt-port', type=int, help='MQTT broker port')
    parser.add_argument('--mqtt-topic', help='MQTT topic')
    parser.add_argument('--mqtt-username', help='MQTT username')
    parser.add_argument('--mqtt-password', help='MQTT password')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        type=str.upper, help='Log level')
    parser.add_argument('--list-ports', action='store_true',
                        help='List available serial ports and exit')
    return parser


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate command-line flags into a configuration overlay"""
    overrides: Dict[str, Any] = {}

    irc: Dict[str, Any] = {}
    if args.irc_server is not None:
        irc['server'] = args.irc_server
    if args.irc_port is not None:
        irc['port'] = args.irc_port
    if args.irc_channel is not None:
        irc['channel'] = args.irc_channel
    if args.irc_nick is not None:
        irc['nickname'] = args.irc_nick
    if args.irc_tls is not None:
        irc['use_tls'] = args.irc_tls
    if irc:
        overrides['irc'] = irc

    meshtastic: Dict[str, Any] = {}
    if args.serial_port is not None:
        meshtastic['serial_port'] = args.serial_port
    if args.meshtastic_channel is not None:
        meshtastic['channel'] = args.meshtastic_channel

    if args.mqtt_broker is not None:
        # A broker given on the command line replaces connection settings from the file
        meshtastic['mqtt'] = {
            'broker_address': args.mqtt_broker,
            'port': args.mqtt_port if args.mqtt_port is not None else DEFAULT_MQTT_PORT,
            'topic': args.mqtt_topic or DEFAULT_MQTT_TOPIC,
            'username': args.mqtt_username,
            'password': args.mqtt_password,
            'client_id': None,
        }
    else:
        mqtt: Dict[str, Any] = {}
        if args.mqtt_port is not None:
            mqtt['port'] = args.mqtt_port
        if args.mqtt_topic is not None:
            mqtt['topic'] = args.mqtt_topic
        if args.mqtt_username is not None:
            mqtt['username'] = args.mqtt_username
        if args.mqtt_password is not None:
            mqtt['password'] = args.mqtt_password
        if mqtt:
            meshtastic['mqtt'] = mqtt

    if meshtastic:
        overrides['meshtastic'] = meshtastic

    if args.log_level is not None:
        overrides['logging'] = {'level': args.log_level}

    return overrides


def list_ports() -> int:
    """Print every serial port with its discovery classification"""
    print("Available serial ports:")
    try:
        ports = enumerate_ports()
    except Exception as e:
        print(f"  Error listing ports: {e}")
        return EXIT_OK

    if not ports:
        print("  No serial ports found")
        return EXIT_OK

    for port in ports:
        print(f"  {port.device} - {describe_port(port)} [{classify_port(port).value}]")
    return EXIT_OK


class BridgeApplication:
    """Main application: configuration, device resolution and the bridge"""

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.config_manager: Optional[ConfigurationManager] = None
        self.logger = None

    def initialize(self):
        """Load configuration and set up logging"""
        self.config_manager = ConfigurationManager(self.args.config)
        self.config_manager.load_config(build_overrides(self.args))

        initialize_logging(self.config_manager.config)
        self.logger = get_logger('main')

    async def resolve_transport(self, bridge_config: BridgeConfig) -> BridgeConfig:
        """Auto-detect a serial radio when neither serial port nor broker is configured"""
        if bridge_config.mesh.transport is not None:
            return bridge_config

        path = await discover_device(bridge_config.mesh.discovery)
        self.logger.info(f"Auto-detected serial port: {path}")

        serial_options = self.config_manager.get_section('meshtastic').get('serial')
        mesh = bridge_config.mesh.with_serial_path(path, serial_options)
        return dataclasses.replace(bridge_config, mesh=mesh)

    def log_summary(self, bridge_config: BridgeConfig):
        chat = bridge_config.chat
        mesh = bridge_config.mesh
        self.logger.info("Starting Meshtastic-IRC bridge")
        self.logger.info(f"IRC: {chat.server}:{chat.port} channel {chat.channel} as {chat.nickname}")

        if isinstance(mesh.transport, BrokerTransportConfig):
            self.logger.info(
                f"Meshtastic: MQTT {mesh.transport.address}:{mesh.transport.port} "
                f"topic {mesh.transport.topic} channel {mesh.channel}"
            )
        else:
            self.logger.info(f"Meshtastic: Serial {mesh.transport.path} channel {mesh.channel}")

    async def run(self) -> int:
        """Run the bridge; returns the process exit code"""
        try:
            self.initialize()
            bridge_config = self.config_manager.build_bridge_config()
        except ConfigurationError as e:
            print(f"Configuration error: {e}", file=sys.stderr)
            return EXIT_FAILURE

        try:
            bridge_config = await self.resolve_transport(bridge_config)
        except DeviceDiscoveryError as e:
            self.logger.error(
                f"Failed to auto-detect serial port: {e.report()}\n"
                f"Please specify with --serial-port or configure MQTT"
            )
            return EXIT_FAILURE

        self.log_summary(bridge_config)
        self.logger.info("Initializing connections...")

        bridge = Bridge(bridge_config)
        try:
            await bridge.run()
        except BridgeTerminatedError as e:
            self.logger.error(str(e))
        return EXIT_FAILURE


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    if args.list_ports:
        return list_ports()

    app = BridgeApplication(args)
    try:
        return asyncio.run(app.run())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
