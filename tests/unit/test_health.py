"""Unit tests for health and metrics HTTP endpoints."""

from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import MagicMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from matchmaker.health import setup_health_routes
from matchmaker.metrics import MetricsCollector
from matchmaker.pool import PairingPool
from matchmaker.relay import SignalingRelay
from tests.helpers.fakes import FakeChannel


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def pool() -> PairingPool:
    return PairingPool()


@pytest.fixture
def transport() -> MagicMock:
    transport = MagicMock()
    transport.is_running = True
    return transport


@pytest.fixture
async def client(
    metrics: MetricsCollector, pool: PairingPool, transport: MagicMock
) -> AsyncGenerator[Any, None]:
    relay = SignalingRelay()
    relay.register(FakeChannel("conn-a"))

    app = web.Application()
    setup_health_routes(app, metrics, pool=pool, relay=relay, transport=transport)
    async with TestClient(TestServer(app)) as client:
        yield client


@pytest.mark.asyncio
async def test_health_reports_state(client: Any, pool: PairingPool) -> None:
    pool.request_pair("conn-a")

    resp = await client.get("/health")

    assert resp.status == 200
    data = await resp.json()
    assert data["status"] == "healthy"
    assert data["connections"] == 1
    assert data["waiting"] is True


@pytest.mark.asyncio
async def test_health_unhealthy_when_transport_down(client: Any, transport: MagicMock) -> None:
    transport.is_running = False

    resp = await client.get("/health")

    assert resp.status == 503
    assert (await resp.json())["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_liveness(client: Any) -> None:
    resp = await client.get("/liveness")

    assert resp.status == 200
    assert (await resp.json())["status"] == "alive"


@pytest.mark.asyncio
async def test_metrics_endpoint(client: Any, metrics: MetricsCollector) -> None:
    metrics.record_search(waiting=True)

    resp = await client.get("/metrics")

    assert resp.status == 200
    assert resp.content_type.startswith("text/plain")
    text = await resp.text()
    assert "searches_total 1.0" in text


@pytest.mark.asyncio
async def test_metrics_summary(client: Any, metrics: MetricsCollector) -> None:
    metrics.record_connection_open()

    resp = await client.get("/metrics/summary")

    assert resp.status == 200
    data = await resp.json()
    assert data["metrics"]["connections_active"] == 1
