"""
Core module for the Meshtastic IRC bridge

Contains configuration management, logging setup, task helpers and the
bridge orchestrator (core.bridge).
"""

from .config import (
    ConfigurationManager,
    ConfigurationError,
    BridgeConfig,
    ChatConfig,
    MeshConfig,
    SerialTransportConfig,
    BrokerTransportConfig,
    DiscoveryConfig
)
from .logging import initialize_logging, get_logger, get_structured_logger
from .tasks import run_until_first_exit

__all__ = [
    'ConfigurationManager',
    'ConfigurationError',
    'BridgeConfig',
    'ChatConfig',
    'MeshConfig',
    'SerialTransportConfig',
    'BrokerTransportConfig',
    'DiscoveryConfig',
    'initialize_logging',
    'get_logger',
    'get_structured_logger',
    'run_until_first_exit'
]
