"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Matchmaker server lifecycle on an ephemeral port
- Raw WebSocket clients speaking the signaling protocol
"""

import asyncio
import json
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import pytest_asyncio
import websockets
from websockets.asyncio.client import ClientConnection

from matchmaker.config import HealthConfig, MatchmakerConfig, WebSocketConfig
from matchmaker.server import MatchmakerServer

logger = logging.getLogger(__name__)


class SignalingPeer:
    """Raw protocol client: sends dicts, receives decoded JSON."""

    def __init__(self, websocket: ClientConnection, connection_id: str) -> None:
        self.websocket = websocket
        self.connection_id = connection_id

    async def send(self, payload: dict[str, Any]) -> None:
        await self.websocket.send(json.dumps(payload))

    async def recv(self, timeout_s: float = 2.0) -> dict[str, Any]:
        raw = await asyncio.wait_for(self.websocket.recv(), timeout=timeout_s)
        message: dict[str, Any] = json.loads(raw)
        return message

    async def recv_type(self, message_type: str, timeout_s: float = 2.0) -> dict[str, Any]:
        """Receive until a message of the given type arrives."""
        while True:
            message = await self.recv(timeout_s)
            if message["type"] == message_type:
                return message
            logger.debug(f"Skipping {message['type']} while waiting for {message_type}")

    async def expect_silence(self, timeout_s: float = 0.2) -> None:
        """Assert nothing arrives within the timeout."""
        try:
            message = await asyncio.wait_for(self.websocket.recv(), timeout=timeout_s)
        except TimeoutError:
            return
        raise AssertionError(f"Unexpected message: {message!r}")


@pytest_asyncio.fixture
async def matchmaker_server() -> AsyncIterator[MatchmakerServer]:
    """Start the matchmaker on an ephemeral port, health endpoints off."""
    config = MatchmakerConfig(
        websocket=WebSocketConfig(host="127.0.0.1", port=0, max_connections=4),
        health=HealthConfig(enabled=False),
        graceful_shutdown_timeout_s=2,
    )
    server = MatchmakerServer(config, rng=random.Random(3))
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


@pytest_asyncio.fixture
async def connect_peer(
    matchmaker_server: MatchmakerServer,
) -> AsyncIterator[Callable[[], Awaitable[SignalingPeer]]]:
    """Factory fixture opening raw clients that are closed after the test."""
    opened: list[ClientConnection] = []

    async def factory() -> SignalingPeer:
        websocket = await websockets.connect(f"ws://127.0.0.1:{matchmaker_server.port}")
        opened.append(websocket)
        hello = json.loads(await asyncio.wait_for(websocket.recv(), timeout=2.0))
        assert hello["type"] == "hello"
        return SignalingPeer(websocket, hello["connection_id"])

    yield factory

    for websocket in opened:
        await websocket.close()
