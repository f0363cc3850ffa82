"""
MQTT broker transport for the Meshtastic IRC bridge
"""

from .mqtt_client import MQTTClient, ConnectionState, SessionEvent, SessionEventType
from .broker_transport import BrokerTransport

__all__ = [
    'MQTTClient', 'ConnectionState', 'SessionEvent', 'SessionEventType',
    'BrokerTransport'
]
