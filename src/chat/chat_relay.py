"""
IRC Chat Relay

Keeps one IRC connection in one channel. Channel messages from other users
become RelayMessages for the mesh; text coming from the mesh is posted to the
channel. Built on the asyncio reactor of the irc library.
"""

import asyncio
import ssl
from typing import Any, Callable, Dict, Optional

import irc.client
import irc.client_aio
import irc.connection
from irc.strings import IRCFoldedCase

from core.config import ChatConfig
from core.logging import get_logger
from core.tasks import run_until_first_exit
from models.message import RelayMessage


# Runs ahead of the reactor's built-in PING responder (priority -42)
EVENT_HANDLER_PRIORITY = -50


class ChatError(Exception):
    """Base class for IRC side failures"""
    pass


class ChatConnectError(ChatError):
    """The IRC server could not be reached or refused registration"""
    pass


class ChatConnectionClosed(ChatError):
    """The IRC connection ended"""
    pass


class ChatRelay:
    """
    IRC side of the bridge.

    Reactor callbacks only queue events; the receive loop handles them so
    that forwarding to the mesh can wait on a full queue.
    """

    def __init__(self, config: ChatConfig,
                 reactor_factory: Optional[Callable[..., Any]] = None):
        self.config = config
        self.logger = get_logger('chat')
        self.reactor_factory = reactor_factory or irc.client_aio.AioReactor

        self.reactor = None
        self.connection = None
        self._events: Optional[asyncio.Queue] = None
        self.ready = False

        self.stats = {
            'messages_relayed_to_mesh': 0,
            'messages_posted': 0,
            'own_messages_ignored': 0,
            'send_failures': 0,
        }

    def _connect_factory(self) -> irc.connection.AioFactory:
        if self.config.use_tls:
            return irc.connection.AioFactory(ssl=ssl.create_default_context())
        return irc.connection.AioFactory()

    async def connect(self):
        """
        Connect and register with the IRC server.

        The channel is joined once the server welcomes the bridge.

        Raises:
            ChatConnectError: if the server cannot be reached
        """
        loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self.reactor = self.reactor_factory(loop=loop)
        self.reactor.add_global_handler("all_events", self._on_event, EVENT_HANDLER_PRIORITY)
        self.connection = self.reactor.server()

        self.logger.info(
            f"Connecting to IRC server {self.config.server}:{self.config.port} "
            f"with TLS={self.config.use_tls}"
        )

        try:
            await self.connection.connect(
                self.config.server,
                self.config.port,
                self.config.nickname,
                password=self.config.password,
                username=self.config.username,
                ircname=self.config.realname,
                connect_factory=self._connect_factory(),
            )
        except (OSError, irc.client.ServerConnectionError) as e:
            raise ChatConnectError(
                f"Failed to connect to IRC server {self.config.server}:{self.config.port}: {e}"
            ) from e

        self.logger.info(f"Connected to IRC server: {self.config.server}:{self.config.port}")
        self.logger.info(f"Joining channel: {self.config.channel}")

    def _on_event(self, connection, event: irc.client.Event):
        """Reactor callback for every event on the connection"""
        self._events.put_nowait(event)
        if event.type == "ping":
            # Answered by the receive loop
            return "NO MORE"
        return None

    async def run(self, outbound: asyncio.Queue, inbound: asyncio.Queue):
        """
        Relay until the connection ends.

        Produces RelayMessage items on outbound and posts chat text taken
        from inbound. Never returns normally.
        """
        self.logger.info("IRC handler run loop started")
        await run_until_first_exit(
            self._receive_loop(outbound),
            self._send_loop(inbound),
        )
        raise ChatConnectionClosed("IRC handler run loop ended")

    async def _receive_loop(self, outbound: asyncio.Queue):
        while True:
            event = await self._events.get()
            await self.handle_event(event, outbound)

    def _is_own_nick(self, nick: str) -> bool:
        return IRCFoldedCase(nick) == self.connection.get_nickname()

    async def handle_event(self, event: irc.client.Event, outbound: asyncio.Queue):
        """Act on one IRC event"""
        event_type = event.type

        if event_type == "pubmsg":
            await self._handle_channel_message(event, outbound)

        elif event_type == "ping":
            self.logger.debug("Received PING, sending PONG")
            self.connection.pong(event.target)

        elif event_type == "welcome":
            self.connection.join(self.config.channel)

        elif event_type in ("endofmotd", "nomotd"):
            self.ready = True
            self.logger.info(f"IRC connection ready - fully connected to {self.config.channel}")

        elif event_type == "join":
            if self._is_own_nick(event.source.nick):
                self.logger.info(f"Successfully joined {event.target}")

        elif event_type in ("privnotice", "pubnotice"):
            text = event.arguments[0] if event.arguments else ""
            self.logger.debug(f"Notice to {event.target}: {text}")

        elif event_type == "nicknameinuse":
            raise ChatConnectError(f"Nickname {self.config.nickname} is already in use")

        elif event_type == "error":
            self.logger.error(f"IRC server error: {' '.join(event.arguments)}")

        elif event_type == "disconnect":
            reason = event.arguments[0] if event.arguments else ""
            self.logger.error("IRC stream ended")
            raise ChatConnectionClosed(
                f"Disconnected from {self.config.server}" + (f": {reason}" if reason else "")
            )

        else:
            self.logger.debug(f"Ignoring IRC event: {event_type}")

    async def _handle_channel_message(self, event: irc.client.Event, outbound: asyncio.Queue):
        if IRCFoldedCase(event.target) != self.config.channel:
            return

        nick = event.source.nick
        if self._is_own_nick(nick):
            self.stats['own_messages_ignored'] += 1
            self.logger.debug("Ignoring own message")
            return

        content = event.arguments[0]
        self.logger.info(f"IRC message from {nick}: {content}")
        await outbound.put(RelayMessage(sender=nick, content=content))
        self.stats['messages_relayed_to_mesh'] += 1

    async def _send_loop(self, inbound: asyncio.Queue):
        while True:
            text = await inbound.get()
            self.logger.info(f"Received message from Meshtastic to send to IRC: {text}")
            self.send_text(text)

    def send_text(self, text: str):
        """
        Post text to the channel, one PRIVMSG per non-empty line.

        Raises:
            ChatConnectionClosed: if the connection is gone
        """
        if not self.connection.is_connected():
            raise ChatConnectionClosed(f"Not connected to {self.config.server}")

        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                self.connection.privmsg(self.config.channel, line)
            except irc.client.ServerNotConnectedError as e:
                raise ChatConnectionClosed(f"Not connected to {self.config.server}") from e
            except ValueError as e:
                self.stats['send_failures'] += 1
                self.logger.error(f"Error sending to IRC: {e}")
                continue
            self.stats['messages_posted'] += 1
            self.logger.info(f"Sending to IRC channel {self.config.channel}: {line}")

    async def close(self):
        """Leave the server"""
        if self.connection is not None and self.connection.is_connected():
            self.connection.disconnect("Bridge shutting down")
        self.logger.info("IRC connection closed")

    def get_status(self) -> Dict[str, Any]:
        return {
            'server': f"{self.config.server}:{self.config.port}",
            'channel': self.config.channel,
            'nickname': self.connection.get_nickname() if self.connection else self.config.nickname,
            'connected': bool(self.connection and self.connection.is_connected()),
            'ready': self.ready,
            'stats': self.stats.copy()
        }
