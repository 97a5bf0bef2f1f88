"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'ok' when the store answers, 'error' when not
  - No session required
  - Security headers on every response
"""

from __future__ import annotations


def test_health_returns_200_with_components(client):
    """Health endpoint returns 200 with status, version, and components."""
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["components"]["app"] == "ok"
    assert data["components"]["database"] == "ok"


def test_health_reports_degraded_store(client_env, monkeypatch):
    """A store that fails its ping turns the status to degraded, still 200."""
    client, store, _ = client_env
    monkeypatch.setattr(store, "ping", lambda: False)
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"


def test_health_sets_no_session_cookie(client):
    """An untouched session is never persisted, so no cookie is issued."""
    resp = client.get("/api/v1/health")
    assert "session" not in resp.cookies


def test_security_headers_present(client):
    resp = client.get("/api/v1/health")
    assert resp.headers["X-Frame-Options"] == "deny"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["Referrer-Policy"] == "origin-when-cross-origin"
    assert "frame-ancestors 'self'" in resp.headers["Content-Security-Policy"]
