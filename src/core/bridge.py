"""
Bridge orchestrator

Connects the IRC side and the mesh side with two bounded queues and runs
them until one of them ends. The bridge has no normal exit: whichever side
stops first takes the other down with it.
"""

import asyncio
from typing import Dict, Optional

from chat.chat_relay import ChatRelay
from mesh.transport import MeshTransport, TransportConnectError, create_transport
from .config import BridgeConfig
from .logging import get_logger, get_structured_logger


CHAT_SIDE = "IRC"
MESH_SIDE = "Meshtastic"


class BridgeTerminatedError(Exception):
    """One side of the bridge stopped, so the bridge stopped"""

    def __init__(self, side: str, cause: Optional[BaseException] = None):
        self.side = side
        self.cause = cause
        message = f"Bridge terminated unexpectedly: {side} handler ended"
        if cause is not None:
            message += f" ({type(cause).__name__}: {cause})"
        super().__init__(message)


class Bridge:
    """Runs the chat relay and a mesh transport against each other"""

    def __init__(self, config: BridgeConfig, chat: Optional[ChatRelay] = None,
                 transport: Optional[MeshTransport] = None):
        self.config = config
        self.chat = chat or ChatRelay(config.chat)
        self.transport = transport or create_transport(config.mesh)
        self.logger = get_logger('bridge')
        self.events = get_structured_logger('bridge')

    async def run(self):
        """
        Run both sides until one ends.

        Raises:
            BridgeTerminatedError: always, naming the side that ended first
        """
        self.logger.info("Starting bridge...")
        self.events.info(
            "bridge_starting",
            irc=f"{self.config.chat.server}:{self.config.chat.port}",
            channel=self.config.chat.channel,
            transport=self.transport.transport_type,
            endpoint=self.transport.endpoint,
            mesh_channel=self.config.mesh.channel,
            queue_size=self.config.queue_size,
        )

        # chat -> mesh carries RelayMessage, mesh -> chat carries rendered text
        to_mesh: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)
        to_chat: asyncio.Queue = asyncio.Queue(maxsize=self.config.queue_size)

        sides: Dict[asyncio.Task, str] = {
            asyncio.ensure_future(self._run_chat(to_mesh, to_chat)): CHAT_SIDE,
            asyncio.ensure_future(self._run_mesh(to_mesh, to_chat)): MESH_SIDE,
        }

        self.logger.info("Bridge is running! Waiting for both connections to establish...")

        try:
            done, _ = await asyncio.wait(sides, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in sides:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*sides, return_exceptions=True)

        finished = next(task for task in sides if task in done)
        side = sides[finished]
        cause = None if finished.cancelled() else finished.exception()

        self.logger.error(f"{side} handler terminated")
        self.events.error(
            "bridge_side_terminated",
            side=side,
            error=str(cause) if cause else None,
            error_type=type(cause).__name__ if cause else None,
            chat_status=self.chat.get_status(),
            mesh_status=self.transport.get_status(),
        )
        raise BridgeTerminatedError(side, cause) from cause

    async def _run_chat(self, to_mesh: asyncio.Queue, to_chat: asyncio.Queue):
        self.logger.info("Initializing IRC connection...")
        try:
            await self.chat.connect()
            self.logger.info("IRC handler initialized successfully")
            self.logger.info("Starting IRC message handler loop")
            await self.chat.run(to_mesh, to_chat)
        except Exception as e:
            self.logger.error(f"IRC handler error: {e}")
            raise
        finally:
            await self.chat.close()

    async def _run_mesh(self, to_mesh: asyncio.Queue, to_chat: asyncio.Queue):
        self.logger.info(f"Initializing Meshtastic {self.transport.transport_type} connection...")
        try:
            await self.transport.connect()
        except TransportConnectError as e:
            self.logger.error(f"Failed to initialize Meshtastic handler: {e}")
            await self.transport.close()
            raise

        try:
            self.logger.info("Meshtastic handler initialized successfully")
            self.logger.info("Starting Meshtastic message handler loop")
            await self.transport.run(to_mesh, to_chat)
        except Exception as e:
            self.logger.error(f"Meshtastic handler error: {e}")
            raise
        finally:
            await self.transport.close()
