"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' against a live store
  - No authentication required, and the security gate never throttles it
"""

from __future__ import annotations


def test_health_returns_200_with_components(client):
    """Health endpoint returns 200 with status, version, and components."""
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert "version" in data
    assert data["components"]["app"] == "ok"
    assert data["components"]["database"] == "ok"


def test_health_no_auth_required(client):
    """Health endpoint is accessible without any session cookie."""
    client.cookies.clear()
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200


def test_health_exempt_from_api_rate_limit(client):
    client.app.state.security_store.update_settings(apiRateLimit=1)
    for _ in range(3):
        assert client.get("/api/v1/health").status_code == 200
