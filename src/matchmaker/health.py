"""Health check endpoints for the matchmaker.

Provides HTTP endpoints for load balancers, monitoring systems, and
orchestration tools (Docker healthcheck, Kubernetes probes), plus the
Prometheus scrape endpoint.
"""

import logging
import time
from typing import Any

from aiohttp import web

from matchmaker.metrics import MetricsCollector
from matchmaker.pool import PairingPool
from matchmaker.relay import SignalingRelay

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the matchmaker."""

    def __init__(
        self,
        metrics: MetricsCollector,
        pool: PairingPool | None = None,
        relay: SignalingRelay | None = None,
        transport: Any = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            metrics: Metrics collector to export
            pool: Pairing pool (reports whether someone is waiting)
            relay: Relay (reports connected clients)
            transport: WebSocket transport (reports whether it is running)
        """
        self.metrics = metrics
        self.pool = pool
        self.relay = relay
        self.transport = transport
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Signaling transport is accepting connections
            503 Service Unavailable: Transport is down
        """
        transport_ok = self.transport is None or bool(self.transport.is_running)

        response_data = {
            "status": "healthy" if transport_ok else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "transport": transport_ok,
            "connections": self.relay.connection_count if self.relay else None,
            "waiting": (self.pool.waiting_id is not None) if self.pool else None,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=200 if transport_ok else 503)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint: OK whenever the process is serving HTTP."""
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Returns:
            200 OK: Metrics in Prometheus text format
        """
        try:
            metrics_text = self.metrics.export_prometheus()
            return web.Response(
                text=metrics_text,
                content_type="text/plain",
                charset="utf-8",
                headers={"X-Prometheus-Format": "0.0.4"},
                status=200,
            )
        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary in JSON."""
        return web.json_response(
            {
                "status": "ok",
                "uptime_seconds": time.time() - self.start_time,
                "metrics": self.metrics.get_summary(),
            },
            status=200,
        )


def setup_health_routes(
    app: web.Application,
    metrics: MetricsCollector,
    pool: PairingPool | None = None,
    relay: SignalingRelay | None = None,
    transport: Any = None,
) -> HealthCheckHandler:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        metrics: Metrics collector to export
        pool: Pairing pool (optional)
        relay: Signaling relay (optional)
        transport: WebSocket transport (optional)

    Returns:
        The handler bound to the routes
    """
    handler = HealthCheckHandler(metrics, pool=pool, relay=relay, transport=transport)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info("Health check endpoints configured: /health, /liveness, /metrics, /metrics/summary")
    return handler
