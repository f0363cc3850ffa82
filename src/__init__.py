"""
Meshtastic IRC Bridge

Relays text messages between an IRC channel and a channel of a Meshtastic
mesh network, reached either over a serial radio link or an MQTT broker.
"""

__version__ = "1.0.0"
__author__ = "Meshtastic IRC Bridge Developers"
