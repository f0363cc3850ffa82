"""
Data models for the Meshtastic IRC bridge

Contains the message structures passed between the chat and mesh sides.
"""

from .message import (
    RelayMessage, OUTBOUND_TAG_PREFIX, format_outbound_text, format_inbound_text
)

__all__ = [
    'RelayMessage', 'OUTBOUND_TAG_PREFIX', 'format_outbound_text',
    'format_inbound_text'
]
