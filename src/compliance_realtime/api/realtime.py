"""Realtime API routes — connection stats and side-channel broadcasts.

Learn: These routes let the REST layer (and operators) push updates that
didn't come from a change feed, e.g. a freshly computed compliance score,
and inspect who is connected. Each broadcast goes through the same
Broadcaster as change events: best-effort, scoped to one project (or to
everyone for an unscoped status message).
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from compliance_realtime.realtime.gateway import RealTimeGateway
from compliance_realtime.schemas.realtime import (
    BroadcastResult,
    ConnectionRead,
    RealtimeStats,
    StatusBroadcast,
    UpdateBroadcast,
)

router = APIRouter(prefix="/realtime")


def _gateway(request: Request) -> RealTimeGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None or not gateway.accepting:
        raise HTTPException(status_code=503, detail="Real-time gateway is not running")
    return gateway


# ─── Introspection ────────────────────────────────────────


@router.get("/stats", response_model=RealtimeStats)
async def realtime_stats(gateway: RealTimeGateway = Depends(_gateway)):
    """Connection counts (total and per project) and change-feed health."""
    health = gateway.health()
    return RealtimeStats(
        connections=health["connections"],
        projects=gateway.registry.count_by_project(),
        accepting=health["accepting"],
        degraded=health["degraded"],
        feeds=health["feeds"],
    )


@router.get("/projects/{project_id}/connections", response_model=list[ConnectionRead])
async def project_connections(
    project_id: str,
    gateway: RealTimeGateway = Depends(_gateway),
):
    """Connections currently subscribed to a project."""
    return [c.summary() for c in gateway.connections_for_project(project_id)]


# ─── Broadcasts ───────────────────────────────────────────


@router.post(
    "/projects/{project_id}/metrics",
    response_model=BroadcastResult,
    status_code=202,
)
async def broadcast_metrics(
    project_id: str,
    body: UpdateBroadcast,
    gateway: RealTimeGateway = Depends(_gateway),
):
    """Push a METRIC_UPDATE to every client subscribed to the project."""
    delivered = await gateway.broadcast_metric_update(project_id, body.data)
    return BroadcastResult(delivered=delivered)


@router.post(
    "/projects/{project_id}/issues",
    response_model=BroadcastResult,
    status_code=202,
)
async def broadcast_issues(
    project_id: str,
    body: UpdateBroadcast,
    gateway: RealTimeGateway = Depends(_gateway),
):
    """Push an ISSUE_UPDATE to every client subscribed to the project."""
    delivered = await gateway.broadcast_issue_update(project_id, body.data)
    return BroadcastResult(delivered=delivered)


@router.post(
    "/projects/{project_id}/quality",
    response_model=BroadcastResult,
    status_code=202,
)
async def broadcast_quality(
    project_id: str,
    body: UpdateBroadcast,
    gateway: RealTimeGateway = Depends(_gateway),
):
    """Push a QUALITY_UPDATE to every client subscribed to the project."""
    delivered = await gateway.broadcast_quality_update(project_id, body.data)
    return BroadcastResult(delivered=delivered)


@router.post("/status", response_model=BroadcastResult, status_code=202)
async def broadcast_status(
    body: StatusBroadcast,
    gateway: RealTimeGateway = Depends(_gateway),
):
    """Push a STATUS_UPDATE to one project, or to every client if no projectId."""
    delivered = await gateway.broadcast_status_update(body.message, body.project_id)
    return BroadcastResult(delivered=delivered)
