"""Health endpoint tests for the sync app."""

from __future__ import annotations

import pytest
from httpx import AsyncClient

from crmsync.config import settings


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_ready_endpoint_reports_configuration(client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "upstream_access_token", "pat-test")
    monkeypatch.setattr(settings, "webhook_signing_secret", "")
    monkeypatch.setattr(settings, "webhook_api_key", "")

    resp = await client.get("/ready")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ready"
    assert data["upstream_configured"] is True
    assert data["webhook_auth_configured"] is False
