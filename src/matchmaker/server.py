"""Matchmaker server entry point.

Wires the pairing pool, relay, signaling service and WebSocket transport
together, serves health/metrics over HTTP, and runs until interrupted.
"""

import argparse
import asyncio
import logging
import random
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from matchmaker.config import MatchmakerConfig
from matchmaker.health import setup_health_routes
from matchmaker.metrics import MetricsCollector
from matchmaker.pool import PairingPool
from matchmaker.relay import SignalingRelay
from matchmaker.service import SignalingService
from matchmaker.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


class MatchmakerServer:
    """Owns every per-process component of the signaling server.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, config: MatchmakerConfig, rng: random.Random | None = None) -> None:
        """Initialize matchmaker server.

        Args:
            config: Server configuration
            rng: Random source for initiator selection (seedable in tests)
        """
        self.config = config
        self.metrics = MetricsCollector()
        self.pool = PairingPool(rng=rng)
        self.relay = SignalingRelay(metrics=self.metrics)
        self.service = SignalingService(self.pool, self.relay, metrics=self.metrics)

        ws_config = config.websocket
        self.transport = WebSocketTransport(
            self.service,
            host=ws_config.host,
            port=ws_config.port,
            max_connections=ws_config.max_connections,
            max_message_bytes=ws_config.max_message_bytes,
            metrics=self.metrics,
        )
        self._health_runner: AppRunner | None = None

    @property
    def port(self) -> int:
        """Bound WebSocket port."""
        return self.transport.port

    async def start(self) -> None:
        """Start the WebSocket transport and, if enabled, the health server."""
        await self.transport.start()

        if self.config.health.enabled:
            health_app = Application()
            setup_health_routes(
                health_app,
                self.metrics,
                pool=self.pool,
                relay=self.relay,
                transport=self.transport,
            )
            self._health_runner = AppRunner(health_app)
            await self._health_runner.setup()
            site = TCPSite(self._health_runner, self.config.health.host, self.config.health_port)
            await site.start()
            logger.info("Health check server started", extra={"port": self.config.health_port})

        logger.info("Matchmaker server ready", extra={"port": self.port})

    async def stop(self) -> None:
        """Stop accepting connections and shut down the health server."""
        try:
            await asyncio.wait_for(
                self.transport.stop(), timeout=self.config.graceful_shutdown_timeout_s
            )
        except TimeoutError:
            logger.warning("WebSocket transport did not stop within the shutdown timeout")

        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
            logger.info("Health check server stopped")

        logger.info("Matchmaker server stopped")


async def start_server(config_path: Path | None) -> None:
    """Start the matchmaker and run until cancelled.

    Args:
        config_path: Path to YAML config file (defaults used if missing)
    """
    config = MatchmakerConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    server = MatchmakerServer(config)
    await server.start()
    try:
        await asyncio.Future()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        await server.stop()


def main() -> None:
    """Entry point for the matchmaker server."""
    parser = argparse.ArgumentParser(description="Matchmaker signaling server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs") / "matchmaker.yaml",
        help="Path to matchmaker config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Matchmaker server interrupted")


if __name__ == "__main__":
    main()
