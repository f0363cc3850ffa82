"""
Configuration Management System for the Meshtastic IRC bridge

Handles loading configuration from built-in defaults, a config file,
environment variables and command-line overrides, validates the merged
result and resolves it into the typed settings the bridge runs on.
"""

import copy
import os
import json
import yaml
import logging
from typing import Any, Callable, Dict, List, Optional, Union
from pathlib import Path
from dataclasses import dataclass, field


DEFAULT_CONFIG_FILE = "config.json"
DEFAULT_MQTT_PORT = 1883
DEFAULT_MQTT_TOPIC = "meshtastic/2/e/#"


@dataclass
class ConfigSource:
    """Configuration source definition"""
    name: str
    priority: int
    loader: Callable
    path: Optional[str] = None


class ConfigurationError(Exception):
    """Configuration-related errors"""
    pass


@dataclass(frozen=True)
class ChatConfig:
    """IRC side settings"""
    server: str
    port: int
    channel: str
    nickname: str
    username: Optional[str] = None
    realname: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True


@dataclass(frozen=True)
class SerialTransportConfig:
    """Direct serial link to a radio"""
    path: str
    reconnect_enabled: bool = False
    reconnect_delay: float = 5.0
    connect_timeout: int = 60


@dataclass(frozen=True)
class BrokerTransportConfig:
    """MQTT broker carrying the Meshtastic wire protocol"""
    address: str
    port: int = DEFAULT_MQTT_PORT
    topic: str = DEFAULT_MQTT_TOPIC
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    publish_topic: Optional[str] = None
    keepalive: int = 30
    retry_delay: float = 5.0
    connect_timeout: float = 10.0
    channel_name: str = "LongFast"
    gateway_id: str = "irc-bridge"
    tls_enabled: bool = False
    ca_cert: Optional[str] = None

    def resolve_publish_topic(self) -> str:
        """
        Get the topic outbound envelopes are published to.

        MQTT forbids publishing to a wildcard topic, so when the subscription
        topic contains one the publish topic is the wildcard-free prefix
        followed by the channel name and gateway id.
        """
        if self.publish_topic:
            return self.publish_topic

        segments = self.topic.split('/')
        if '#' not in segments and '+' not in segments:
            return self.topic

        prefix: List[str] = []
        for segment in segments:
            if segment in ('#', '+'):
                break
            prefix.append(segment)

        return '/'.join(prefix + [self.channel_name, self.gateway_id])


TransportConfig = Union[SerialTransportConfig, BrokerTransportConfig]


@dataclass(frozen=True)
class DiscoveryConfig:
    """Serial device auto-detection settings"""
    connect_timeout: float = 3.0
    envelope_timeout: float = 2.0


@dataclass(frozen=True)
class MeshConfig:
    """Mesh side settings; transport None means auto-detect a serial device"""
    channel: int
    transport: Optional[TransportConfig] = None
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)

    def with_serial_path(self, path: str, serial_options: Optional[Dict[str, Any]] = None) -> 'MeshConfig':
        """Return a copy using a serial transport on the given path"""
        options = serial_options or {}
        transport = SerialTransportConfig(
            path=path,
            reconnect_enabled=bool(options.get('reconnect_enabled', False)),
            reconnect_delay=float(options.get('reconnect_delay', 5.0)),
            connect_timeout=int(options.get('connect_timeout', 60)),
        )
        return MeshConfig(channel=self.channel, transport=transport, discovery=self.discovery)


@dataclass(frozen=True)
class BridgeConfig:
    """Fully resolved bridge settings"""
    chat: ChatConfig
    mesh: MeshConfig
    queue_size: int = 100


class ConfigurationManager:
    """
    Manages bridge configuration with support for multiple sources
    and validation.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv('MESHBRIDGE_CONFIG', DEFAULT_CONFIG_FILE))
        self.config: Dict[str, Any] = {}
        self.overrides: Dict[str, Any] = {}
        self.sources: List[ConfigSource] = []
        self.logger = logging.getLogger(__name__)

        # Default configuration values
        self.defaults = {
            "irc": {
                "server": "irc.libera.chat",
                "port": 6697,
                "channel": "#meshtastic",
                "nickname": "meshtastic-bridge",
                "username": None,
                "realname": None,
                "password": None,
                "use_tls": True
            },
            "meshtastic": {
                "serial_port": None,
                "channel": 0,
                "mqtt": None,
                "serial": {
                    "reconnect_enabled": False,
                    "reconnect_delay": 5,
                    "connect_timeout": 60
                },
                "discovery": {
                    "connect_timeout": 3,
                    "envelope_timeout": 2
                }
            },
            "bridge": {
                "queue_size": 100
            },
            "logging": {
                "level": "INFO",
                "file": None,
                "max_size": "10MB",
                "backup_count": 5,
                "console": True
            }
        }

        self._setup_sources()

    def _setup_sources(self):
        """Set up configuration sources in priority order"""
        # Command-line overrides (highest priority)
        self.sources.append(ConfigSource(
            name="command_line",
            priority=4,
            loader=lambda: self.overrides
        ))

        self.sources.append(ConfigSource(
            name="environment",
            priority=3,
            loader=self._load_from_env
        ))

        self.sources.append(ConfigSource(
            name="config_file",
            priority=2,
            loader=lambda: self._load_from_file(str(self.config_path)),
            path=str(self.config_path)
        ))

        # Built-in defaults (lowest priority)
        self.sources.append(ConfigSource(
            name="defaults",
            priority=1,
            loader=lambda: copy.deepcopy(self.defaults)
        ))

    def load_config(self, overrides: Optional[Dict[str, Any]] = None) -> None:
        """Load configuration from all sources"""
        if overrides is not None:
            self.overrides = overrides

        if self.config_path.exists():
            self.logger.info(f"Loading config from: {self.config_path}")
        else:
            self.logger.info(f"Config file not found at {self.config_path}. Using defaults.")

        merged_config: Dict[str, Any] = {}

        # Load from each source (lowest priority first)
        for source in sorted(self.sources, key=lambda x: x.priority):
            try:
                source_config = source.loader()
                if source_config:
                    merged_config = self._deep_merge(merged_config, source_config)
                    self.logger.debug(f"Loaded configuration from {source.name}")
            except Exception as e:
                self.logger.warning(f"Failed to load config from {source.name}: {e}")

        self.config = merged_config
        self._validate_config()
        self.logger.info("Configuration loaded successfully")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables"""
        config: Dict[str, Any] = {}

        env_mappings = {
            "MESHBRIDGE_LOG_LEVEL": "logging.level",
            "MESHBRIDGE_IRC_SERVER": "irc.server",
            "MESHBRIDGE_IRC_PASSWORD": "irc.password",
            "MESHBRIDGE_SERIAL_PORT": "meshtastic.serial_port",
            "MESHBRIDGE_MQTT_BROKER": "meshtastic.mqtt.broker_address",
            "MESHBRIDGE_MQTT_USERNAME": "meshtastic.mqtt.username",
            "MESHBRIDGE_MQTT_PASSWORD": "meshtastic.mqtt.password",
        }

        for env_var, config_key in env_mappings.items():
            value = os.getenv(env_var)
            if value is not None and value != "":
                self._set_nested_value(config, config_key, value)

        return config

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file"""
        path = Path(file_path)

        if not path.exists():
            return {}

        try:
            with open(path, 'r') as f:
                if path.suffix.lower() in ['.yaml', '.yml']:
                    loaded = yaml.safe_load(f) or {}
                elif path.suffix.lower() == '.json':
                    loaded = json.load(f)
                else:
                    self.logger.warning(f"Unsupported config file format: {path}")
                    return {}
        except (OSError, ValueError, yaml.YAMLError) as e:
            self.logger.error(f"Could not parse config file {path}: {e}. Using defaults.")
            return {}

        if not isinstance(loaded, dict):
            self.logger.error(f"Config file {path} does not contain a mapping. Using defaults.")
            return {}

        self.logger.info("Successfully loaded config from file")
        return loaded

    def _deep_merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dictionaries"""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _set_nested_value(self, config: Dict, key_path: str, value: Any) -> None:
        """Set a nested configuration value using dot notation"""
        keys = key_path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _validate_config(self) -> None:
        """Validate configuration values"""
        errors = []

        for section in ('irc', 'meshtastic'):
            if not isinstance(self.config.get(section), dict):
                errors.append(f"Missing required configuration section: {section}")
        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

        if not self.get('irc.server'):
            errors.append("IRC server must not be empty")
        if not self.get('irc.channel'):
            errors.append("IRC channel must not be empty")
        if not self.get('irc.nickname'):
            errors.append("IRC nickname must not be empty")

        irc_port = self._coerce_int('irc.port', errors)
        if irc_port is not None and not 1 <= irc_port <= 65535:
            errors.append(f"Invalid IRC port: {irc_port}")

        channel = self._coerce_int('meshtastic.channel', errors)
        if channel is not None and channel < 0:
            errors.append(f"Invalid Meshtastic channel: {channel}")

        mqtt_config = self.get_mqtt_section()
        if mqtt_config is not None:
            if not isinstance(mqtt_config, dict):
                errors.append("meshtastic.mqtt must be a mapping")
            else:
                if not mqtt_config.get('broker_address'):
                    errors.append("MQTT broker_address must not be empty")
                mqtt_port = self._coerce_int('meshtastic.mqtt.port', errors, DEFAULT_MQTT_PORT)
                if mqtt_port is not None and not 1 <= mqtt_port <= 65535:
                    errors.append(f"Invalid MQTT port: {mqtt_port}")

        queue_size = self._coerce_int('bridge.queue_size', errors, 100)
        if queue_size is not None and queue_size < 1:
            errors.append(f"Invalid queue size: {queue_size}")

        log_level = str(self.get('logging.level', 'INFO'))
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if log_level.upper() not in valid_levels:
            errors.append(f"Invalid log level: {log_level}")

        if errors:
            raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")

    def _coerce_int(self, key: str, errors: List[str], default: Any = None) -> Optional[int]:
        """Read an integer setting, recording an error if it is not one"""
        value = self.get(key, default)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            errors.append(f"Invalid value for {key}: {value!r}")
            return None

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation"""
        keys = key.split('.')
        current = self.config

        try:
            for k in keys:
                current = current[k]
            return current
        except (KeyError, TypeError):
            return default

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.get(section, {}) or {}

    def get_mqtt_section(self) -> Optional[Any]:
        """
        Get the MQTT broker section, or None when no broker is configured.

        Credentials supplied through the environment alone do not configure
        a broker.
        """
        mqtt = self.get('meshtastic.mqtt')
        if not mqtt:
            return None
        if isinstance(mqtt, dict) and not mqtt.get('broker_address'):
            if set(mqtt) <= {'username', 'password'}:
                return None
        return mqtt

    def build_chat_config(self) -> ChatConfig:
        """Resolve the IRC section"""
        irc = self.get_section('irc')
        return ChatConfig(
            server=str(irc['server']),
            port=int(irc['port']),
            channel=str(irc['channel']),
            nickname=str(irc['nickname']),
            username=irc.get('username') or None,
            realname=irc.get('realname') or None,
            password=irc.get('password') or None,
            use_tls=_as_bool(irc.get('use_tls', True)),
        )

    def build_mesh_config(self) -> MeshConfig:
        """
        Resolve the Meshtastic section.

        A broker section takes precedence over a serial port; with neither,
        the transport is left unset so the caller can auto-detect a device.
        """
        mesh = self.get_section('meshtastic')
        channel = int(mesh.get('channel', 0))

        discovery_section = mesh.get('discovery') or {}
        discovery = DiscoveryConfig(
            connect_timeout=float(discovery_section.get('connect_timeout', 3)),
            envelope_timeout=float(discovery_section.get('envelope_timeout', 2)),
        )

        mesh_config = MeshConfig(channel=channel, discovery=discovery)

        mqtt = self.get_mqtt_section()
        if mqtt:
            transport = BrokerTransportConfig(
                address=str(mqtt['broker_address']),
                port=int(mqtt.get('port', DEFAULT_MQTT_PORT)),
                topic=str(mqtt.get('topic') or DEFAULT_MQTT_TOPIC),
                username=mqtt.get('username') or None,
                password=mqtt.get('password') or None,
                client_id=mqtt.get('client_id') or None,
                publish_topic=mqtt.get('publish_topic') or None,
                keepalive=int(mqtt.get('keepalive', 30)),
                retry_delay=float(mqtt.get('retry_delay', 5)),
                connect_timeout=float(mqtt.get('connect_timeout', 10)),
                channel_name=str(mqtt.get('channel_name', 'LongFast')),
                gateway_id=str(mqtt.get('gateway_id', 'irc-bridge')),
                tls_enabled=_as_bool(mqtt.get('tls_enabled', False)),
                ca_cert=mqtt.get('ca_cert') or None,
            )
            return MeshConfig(channel=channel, transport=transport, discovery=discovery)

        serial_port = mesh.get('serial_port')
        if serial_port:
            return mesh_config.with_serial_path(str(serial_port), mesh.get('serial'))

        return mesh_config

    def build_bridge_config(self) -> BridgeConfig:
        """Resolve the merged configuration into bridge settings"""
        return BridgeConfig(
            chat=self.build_chat_config(),
            mesh=self.build_mesh_config(),
            queue_size=int(self.get('bridge.queue_size', 100)),
        )


def _as_bool(value: Any) -> bool:
    """Interpret booleans that may arrive as strings from env or CLI"""
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)
