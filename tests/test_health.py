"""
Tests for the /health endpoint and the API root.

Verifies:
  - Returns HTTP 200 with status="ok" (API liveness check)
  - Reports the database as disconnected without raising
  - Exposes the subscriber count and scheduler state
  - Root / endpoint returns API metadata

All tests run without a live MongoDB (db is mocked as disconnected in conftest).
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest


@pytest.mark.asyncio
async def test_health_returns_200(client):
    """Health endpoint must always return 200 if the API process is alive."""
    response = await client.get("/health")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_health_response_schema(client):
    data = (await client.get("/health")).json()

    assert data["status"] == "ok"
    assert data["version"] == "0.1.0"
    for field in ("database", "environment", "subscribers", "scheduler"):
        assert field in data


@pytest.mark.asyncio
async def test_health_disconnected_when_no_db(client):
    data = (await client.get("/health")).json()
    assert data["database"] == "disconnected"


@pytest.mark.asyncio
async def test_health_connected_when_ping_succeeds(client):
    fake_client = MagicMock()
    fake_client.admin.command = AsyncMock(return_value={"ok": 1})
    with patch("moodmap.core.database.db_client.client", fake_client):
        data = (await client.get("/health")).json()
    assert data["database"] == "connected"


@pytest.mark.asyncio
async def test_health_reports_broadcast_state(client):
    """The scheduler only runs under the lifespan, which ASGITransport skips."""
    data = (await client.get("/health")).json()
    assert data["subscribers"] == 0
    assert data["scheduler"] == "stopped"


@pytest.mark.asyncio
async def test_root_endpoint(client):
    response = await client.get("/")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "running"
    assert data["name"] == "moodmap API"
    assert "version" in data


@pytest.mark.asyncio
async def test_docs_available_in_test_env(client):
    response = await client.get("/docs")
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_unknown_route_returns_404(client):
    response = await client.get("/does-not-exist")
    assert response.status_code == 404
