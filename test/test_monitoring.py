"""
Tests for monitoring endpoints and Prometheus metrics.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from app.utils.metrics import (
    SSE_CLIENTS_ACTIVE,
    SSE_CONNECTIONS_ACTIVE,
    SSE_FRAMES_SENT_TOTAL,
    SSE_WRITE_FAILURES_TOTAL,
    PrometheusMiddleware,
)
from main import app
from utils.mocks import FailingSink, RecordingSink


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, override_sse_manager):
        await override_sse_manager.add("A", RecordingSink())

        async with _client() as client:
            response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["total_connections"] == 1
        assert data["heartbeat_running"] is True
        assert "uptime_seconds" in data


class TestPrometheusMetrics:
    @pytest.mark.asyncio
    async def test_metrics_endpoint_exposes_sse_gauges(self, override_sse_manager):
        await override_sse_manager.add("A", RecordingSink())

        async with _client() as client:
            response = await client.get("/metrics")

        assert response.status_code == 200
        assert "sse_connections_active 1.0" in response.text
        assert "sse_clients_active 1.0" in response.text

    @pytest.mark.asyncio
    async def test_gauges_follow_registry(self, manager):
        sink = RecordingSink()
        await manager.add("A", sink)
        await manager.add("B", RecordingSink())
        assert SSE_CONNECTIONS_ACTIVE._value.get() == 2
        assert SSE_CLIENTS_ACTIVE._value.get() == 2

        await manager.remove("A", sink)
        assert SSE_CONNECTIONS_ACTIVE._value.get() == 1
        assert SSE_CLIENTS_ACTIVE._value.get() == 1

    @pytest.mark.asyncio
    async def test_frame_and_failure_counters(self, manager):
        sent_before = SSE_FRAMES_SENT_TOTAL.labels(scope="broadcast")._value.get()
        failed_before = SSE_WRITE_FAILURES_TOTAL.labels(scope="broadcast")._value.get()
        await manager.add("A", RecordingSink())
        await manager.add("B", FailingSink())

        await manager.broadcast("alert", {})

        assert SSE_FRAMES_SENT_TOTAL.labels(scope="broadcast")._value.get() == sent_before + 1
        assert SSE_WRITE_FAILURES_TOTAL.labels(scope="broadcast")._value.get() == failed_before + 1

    def test_normalize_path(self):
        normalize = PrometheusMiddleware._normalize_path
        assert normalize("/api/v1/items/123") == "/api/v1/items/{id}"
        assert normalize("/api/v1/sse/client_1700000000000_abc123xyz") == "/api/v1/sse/{client_id}"
        assert normalize("/api/v1/sse/notify") == "/api/v1/sse/notify"
