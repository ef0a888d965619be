"""
Health Endpoint Tests
=====================

Tests for the health check, metrics and request ID plumbing.
"""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    """Test that the health endpoint returns OK."""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert "timestamp" in data


@pytest.mark.asyncio
async def test_root_redirect(client: AsyncClient):
    """Test that root redirects to docs."""
    response = await client.get("/", follow_redirects=False)

    assert response.status_code in [200, 307]


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    response = await client.get("/health", headers={"X-Request-ID": "trace-123"})
    assert response.headers["X-Request-ID"] == "trace-123"


@pytest.mark.asyncio
async def test_metrics_exposes_export_counters(client: AsyncClient):
    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text
    assert "submission_exports_total" in response.text
