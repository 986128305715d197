"""
tests/test_health.py -- GET /api/v1/health and the background purge sweep.
"""

from __future__ import annotations

import asyncio

from sqlalchemy.exc import OperationalError

from api.main import VERSION, app, purge_once


def test_health_reports_components(api_client):
    client, _, _ = api_client
    client.cookies.clear()
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {
        "status": "healthy",
        "version": VERSION,
        "components": {"app": "ok", "database": "ok"},
    }


def test_health_degraded_when_database_fails(api_client, monkeypatch):
    client, _, _ = api_client

    def broken():
        raise OperationalError("SELECT count(*)", {}, Exception("disk I/O error"))

    monkeypatch.setattr(app.state.store, "count_accounts", broken)
    data = client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "error"


def test_purge_once_abandons_stale_attempts(api_client, monkeypatch):
    client, _, _ = api_client
    service = app.state.login_service
    attempt_id = client.post("/api/v1/auth/attempts").json()["attempt_id"]
    monkeypatch.setattr(service._settings, "attempt_ttl_seconds", 0)

    asyncio.run(purge_once(app))

    r = client.get(f"/api/v1/auth/attempts/{attempt_id}")
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "challenge_invalid"
