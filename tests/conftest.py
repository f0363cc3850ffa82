"""
Global pytest configuration and fixtures for the Meshtastic IRC bridge tests.
"""
import sys
from pathlib import Path

import pytest

# Make the src packages and the tests.mocks helpers importable
PROJECT_ROOT = Path(__file__).parent.parent
for path in (PROJECT_ROOT / "src", PROJECT_ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from core.config import (  # noqa: E402
    BridgeConfig, BrokerTransportConfig, ChatConfig, MeshConfig, SerialTransportConfig
)
from mesh.node_directory import NodeDirectory  # noqa: E402
from mesh.packet_translator import PacketTranslator  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line("markers", "integration: end-to-end tests across components")


@pytest.fixture
def chat_config():
    """Provide IRC settings pointing at a test network."""
    return ChatConfig(
        server="irc.example.net",
        port=6697,
        channel="#meshtastic",
        nickname="meshtastic-bridge",
        use_tls=True
    )


@pytest.fixture
def serial_config():
    """Provide serial transport settings."""
    return SerialTransportConfig(path="/dev/ttyUSB0")


@pytest.fixture
def broker_config():
    """Provide broker transport settings."""
    return BrokerTransportConfig(
        address="mqtt.example.net",
        port=1883,
        topic="meshtastic/2/e/#",
        retry_delay=0.01
    )


@pytest.fixture
def bridge_config(chat_config, serial_config):
    """Provide a complete bridge configuration on mesh channel 0."""
    return BridgeConfig(
        chat=chat_config,
        mesh=MeshConfig(channel=0, transport=serial_config),
        queue_size=100
    )


@pytest.fixture
def node_directory():
    return NodeDirectory()


@pytest.fixture
def translator(node_directory):
    """Translator for mesh channel 0."""
    return PacketTranslator(0, node_directory)


@pytest.fixture
def temp_dir(tmp_path):
    """Create a temporary directory for test files."""
    return tmp_path
