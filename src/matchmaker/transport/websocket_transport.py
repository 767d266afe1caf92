"""WebSocket transport implementation.

Accepts signaling clients over WebSocket, assigns each connection a unique
identity, decodes JSON frames and hands them to the signaling service.
"""

import logging
import uuid
from typing import Any

import websockets
from websockets.asyncio.server import ServerConnection, serve
from websockets.protocol import State

from matchmaker.metrics import MetricsCollector
from matchmaker.protocol import (
    ErrorMessage,
    ProtocolError,
    ServerMessage,
    parse_client_message,
)
from matchmaker.service import SignalingService
from matchmaker.transport.base import PeerChannel

logger = logging.getLogger(__name__)

# Close code for "try again later" (RFC 6455 registry)
CLOSE_TRY_AGAIN_LATER = 1013


def new_connection_id() -> str:
    """Generate an opaque, never-reused connection identity."""
    return f"conn-{uuid.uuid4().hex[:12]}"


class WebSocketChannel(PeerChannel):
    """WebSocket-backed peer channel."""

    def __init__(self, websocket: ServerConnection, connection_id: str) -> None:
        """Initialize WebSocket channel.

        Args:
            websocket: WebSocket connection
            connection_id: Unique connection identifier
        """
        self._websocket = websocket
        self._connection_id = connection_id
        self._connected = True

        logger.debug(
            "WebSocket channel initialized",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

    @property
    def connection_id(self) -> str:
        """Get unique connection identifier."""
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        """Check if the connection is still active."""
        return self._connected and self._websocket.state == State.OPEN

    async def send(self, message: ServerMessage) -> None:
        """Send a server message to the client.

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        if not self.is_connected:
            raise ConnectionError("WebSocket connection is closed")

        try:
            await self._websocket.send(message.to_json())
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"WebSocket connection closed: {e}") from e

    async def close(self) -> None:
        """Close the connection."""
        if not self._connected:
            return

        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during channel close",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
        finally:
            self._connected = False


class WebSocketTransport:
    """WebSocket signaling server.

    Manages the server lifecycle and runs one handler per client connection.
    """

    def __init__(
        self,
        service: SignalingService,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 3001,
        max_connections: int = 1000,
        max_message_bytes: int = 2**16,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            service: Signaling service receiving decoded messages
            host: Bind host address
            port: Bind port (0 picks an ephemeral port)
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum accepted frame size
            metrics: Optional metrics collector
        """
        self._service = service
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._metrics = metrics
        self._server: Any = None  # websockets Server
        self._running = False
        self._active = 0

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        return self._running

    @property
    def port(self) -> int:
        """Bound port (resolved after ``start`` when configured as 0)."""
        if self._server is not None and self._server.sockets:
            bound: int = self._server.sockets[0].getsockname()[1]
            return bound
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport is already running or fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
            self._running = True
        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

        logger.info("WebSocket server started", extra={"host": self._host, "port": self.port})

    async def stop(self) -> None:
        """Stop the WebSocket server and close all connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")
        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Run one client connection until it closes.

        Args:
            websocket: WebSocket connection
        """
        if self._active >= self._max_connections:
            logger.warning(
                "Connection limit reached, rejecting client",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "server full")
            return

        connection_id = new_connection_id()
        channel = WebSocketChannel(websocket, connection_id)
        self._active += 1

        logger.info(
            "New WebSocket connection",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

        try:
            await self._service.connect(channel)
            async for raw_message in websocket:
                await self._handle_frame(channel, raw_message)
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Connection closed by client", extra={"connection_id": connection_id})
        except Exception as e:
            logger.error(
                "Error in connection handler",
                extra={"connection_id": connection_id, "error": str(e)},
            )
        finally:
            self._active -= 1
            await self._service.disconnect(connection_id)
            logger.info("WebSocket connection closed", extra={"connection_id": connection_id})

    async def _handle_frame(self, channel: WebSocketChannel, raw_message: str | bytes) -> None:
        try:
            message = parse_client_message(raw_message)
        except ProtocolError as e:
            logger.warning(
                "Rejected client frame",
                extra={"connection_id": channel.connection_id, "error": str(e)},
            )
            if self._metrics is not None:
                self._metrics.record_protocol_error()
            try:
                await channel.send(ErrorMessage(message=str(e), code="INVALID_MESSAGE"))
            except ConnectionError as send_error:
                logger.debug(
                    "Could not report frame error",
                    extra={"connection_id": channel.connection_id, "error": str(send_error)},
                )
            return

        await self._service.handle(channel.connection_id, message)
