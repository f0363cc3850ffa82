"""
IRC side of the Meshtastic IRC bridge
"""

from .chat_relay import ChatRelay, ChatError, ChatConnectError, ChatConnectionClosed

__all__ = ['ChatRelay', 'ChatError', 'ChatConnectError', 'ChatConnectionClosed']
