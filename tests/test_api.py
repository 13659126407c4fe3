"""HTTP API tests — health, stats, and side-channel broadcasts."""

import pytest

from conftest import make_connection
from compliance_realtime.auth.jwt import create_access_token


@pytest.mark.asyncio
async def test_health_returns_ok(client):
    """Health endpoint should return server status and version."""
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["server"] == "ok"
    assert data["realtime"] == "ok"
    assert data["status"] == "healthy"
    assert data["connections"] == 0
    assert "version" in data
    # Integrations are disabled in tests, so they're not checked
    assert "postgres" not in data
    assert "redis" not in data


@pytest.mark.asyncio
async def test_health_without_gateway(app):
    from httpx import ASGITransport, AsyncClient

    app.state.gateway = None
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        resp = await ac.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "degraded"


@pytest.mark.asyncio
async def test_stats_counts_connections_per_project(client, gateway):
    make_connection(gateway.registry, "proj-1")
    make_connection(gateway.registry, "proj-1")
    make_connection(gateway.registry, "proj-2")
    make_connection(gateway.registry)

    resp = await client.get("/api/v1/realtime/stats")
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["connections"] == 4
    assert stats["projects"] == {"proj-1": 2, "proj-2": 1}
    assert stats["accepting"] is True
    assert stats["degraded"] is False


@pytest.mark.asyncio
async def test_project_connections(client, gateway):
    conn = make_connection(gateway.registry, "proj-1")
    make_connection(gateway.registry, "proj-2")

    resp = await client.get("/api/v1/realtime/projects/proj-1/connections")
    assert resp.status_code == 200
    (row,) = resp.json()
    assert row["id"] == conn.id
    assert row["project_id"] == "proj-1"
    assert row["state"] == "open"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kind,message_type",
    [("metrics", "METRIC_UPDATE"), ("issues", "ISSUE_UPDATE"), ("quality", "QUALITY_UPDATE")],
)
async def test_typed_update_broadcast(client, gateway, kind, message_type):
    target = make_connection(gateway.registry, "proj-1")
    bystander = make_connection(gateway.registry, "proj-2")

    resp = await client.post(
        f"/api/v1/realtime/projects/proj-1/{kind}", json={"data": {"score": 93}}
    )

    assert resp.status_code == 202
    assert resp.json() == {"delivered": 1}
    (frame,) = target.transport.frames
    assert frame["type"] == message_type
    assert frame["projectId"] == "proj-1"
    assert frame["data"] == {"score": 93}
    assert bystander.transport.sent == []


@pytest.mark.asyncio
async def test_status_broadcast_scoped_and_unscoped(client, gateway):
    scoped = make_connection(gateway.registry, "proj-1")
    unscoped = make_connection(gateway.registry)

    r = await client.post("/api/v1/realtime/status", json={"message": "Maintenance"})
    assert r.status_code == 202
    assert r.json()["delivered"] == 2

    r = await client.post(
        "/api/v1/realtime/status", json={"message": "Rescored", "projectId": "proj-1"}
    )
    assert r.json()["delivered"] == 1
    assert scoped.transport.frames[-1]["data"] == {"message": "Rescored"}
    assert len(unscoped.transport.sent) == 1


@pytest.mark.asyncio
async def test_status_broadcast_validation(client):
    r = await client.post("/api/v1/realtime/status", json={"message": ""})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_broadcast_when_gateway_stopped(client, gateway):
    gateway.accepting = False
    r = await client.post("/api/v1/realtime/projects/proj-1/metrics", json={"data": {}})
    assert r.status_code == 503
    gateway.accepting = True


# ─── Auth ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_realtime_routes_require_auth(unauthenticated_client):
    r = await unauthenticated_client.get("/api/v1/realtime/stats")
    assert r.status_code == 401
    assert r.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_invalid_token_rejected(unauthenticated_client):
    r = await unauthenticated_client.get(
        "/api/v1/realtime/stats", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_valid_token_accepted(unauthenticated_client):
    token = create_access_token("user-42", project_id="proj-1")
    r = await unauthenticated_client.get(
        "/api/v1/realtime/stats", headers={"Authorization": f"Bearer {token}"}
    )
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_health_is_open(unauthenticated_client):
    r = await unauthenticated_client.get("/api/v1/health")
    assert r.status_code == 200
