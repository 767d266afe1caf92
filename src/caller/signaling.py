"""WebSocket signaling client.

Connects to the matchmaker, records the connection id announced in the
server's ``hello`` and exposes typed send/receive.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from matchmaker.protocol import (
    ClientMessage,
    HelloMessage,
    ProtocolError,
    ServerMessage,
    parse_server_message,
)

logger = logging.getLogger(__name__)


class SignalingSender(ABC):
    """Outbound half of the signaling channel."""

    @abstractmethod
    async def send(self, message: ClientMessage) -> None:
        """Send a message to the server.

        Raises:
            ConnectionError: If the channel is closed
        """


class SignalingClient(SignalingSender):
    """websockets client speaking the matchmaker protocol."""

    def __init__(self, server_url: str) -> None:
        """Initialize signaling client.

        Args:
            server_url: WebSocket server URL (e.g., ws://localhost:3001)
        """
        self.server_url = server_url
        self.connection_id: str | None = None
        self._websocket: ClientConnection | None = None

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None

    async def connect(self) -> str:
        """Open the connection and wait for the server's hello.

        Returns:
            Connection id assigned by the server

        Raises:
            ConnectionError: If the handshake fails
        """
        try:
            self._websocket = await websockets.connect(self.server_url)
            first = parse_server_message(await self._websocket.recv())
        except (OSError, ConnectionClosed, ProtocolError) as e:
            await self.close()
            raise ConnectionError(f"Signaling handshake with {self.server_url} failed: {e}") from e

        if not isinstance(first, HelloMessage):
            await self.close()
            raise ConnectionError(f"Expected hello from server, got {first.type}")

        self.connection_id = first.connection_id
        logger.info(
            "Connected to signaling server",
            extra={"server_url": self.server_url, "connection_id": self.connection_id},
        )
        return self.connection_id

    async def send(self, message: ClientMessage) -> None:
        if self._websocket is None:
            raise ConnectionError("Signaling channel is not connected")
        try:
            await self._websocket.send(message.to_json())
        except ConnectionClosed as e:
            raise ConnectionError("Signaling channel closed") from e
        logger.debug("Sent signaling message", extra={"type": message.type})

    async def messages(self) -> AsyncIterator[ServerMessage]:
        """Yield parsed server messages until the connection closes.

        Frames that fail to parse are logged and skipped.
        """
        if self._websocket is None:
            raise ConnectionError("Signaling channel is not connected")
        try:
            async for frame in self._websocket:
                try:
                    yield parse_server_message(frame)
                except ProtocolError as e:
                    logger.warning("Ignoring malformed server message", extra={"error": str(e)})
        except ConnectionClosed:
            logger.info("Signaling connection closed by server")

    async def close(self) -> None:
        if self._websocket is not None:
            websocket, self._websocket = self._websocket, None
            await websocket.close()
