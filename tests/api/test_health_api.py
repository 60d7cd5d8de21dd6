"""
Tests for health, version and metrics endpoints.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from confluent_kafka import KafkaException
from tortoise.exceptions import OperationalError

from anchorpipe import __version__


@pytest.mark.api
@pytest.mark.asyncio
class TestHealthEndpoints:
    """Test the health checks."""

    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["version"] == __version__
        assert body["components"] == {
            "database": "healthy",
            "redis": "not_configured",
            "queue": "not_configured",
        }

    async def test_health_reports_database_failure(
        self, client: httpx.AsyncClient
    ) -> None:
        with patch(
            "anchorpipe.api.routes.health.check_database",
            AsyncMock(side_effect=OperationalError("no connection")),
        ):
            response = await client.get("/api/health")

        assert response.json()["status"] == "unhealthy"
        assert response.json()["components"]["database"] == "unhealthy"

    async def test_liveness(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/health/live")

        assert response.json()["status"] == "alive"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    async def test_database(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/health/db")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    async def test_database_unavailable(self, client: httpx.AsyncClient) -> None:
        with patch(
            "anchorpipe.api.routes.health.check_database",
            AsyncMock(side_effect=OperationalError("no connection")),
        ):
            response = await client.get("/api/health/db")

        assert response.status_code == 503
        assert response.json()["database"] == "error"

    async def test_queue_not_configured(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/health/mq")

        assert response.status_code == 200
        assert response.json()["reason"] == "not_configured"

    async def test_queue_unreachable(self, client: httpx.AsyncClient) -> None:
        with patch(
            "anchorpipe.api.routes.health.check_broker",
            AsyncMock(side_effect=KafkaException("timed out")),
        ):
            response = await client.get("/api/health/mq")

        assert response.status_code == 503
        assert response.json()["ok"] is False


@pytest.mark.api
@pytest.mark.asyncio
class TestInfoEndpoints:
    async def test_version(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/version")

        assert response.json() == {
            "service": "Anchorpipe API",
            "version": __version__,
            "environment": "testing",
        }

    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        await client.get("/api/health/live")

        response = await client.get("/api/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "http_requests_total" in response.text

    async def test_unknown_route(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/nope")

        assert response.status_code == 404
        assert response.json() == {"detail": "Not Found", "path": "/api/nope"}
