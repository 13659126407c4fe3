"""Pydantic schemas for the realtime HTTP API.

Learn: Separate input schemas (what callers POST) from read schemas
(what the API returns). Bodies use camelCase aliases to match the
WebSocket wire format the dashboard already speaks.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# ─── Broadcasts ─────────────────────────────────────────

class UpdateBroadcast(BaseModel):
    """Body for metric/issue/quality broadcasts."""
    data: dict[str, Any] = Field(default_factory=dict)


class StatusBroadcast(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)
    project_id: Optional[str] = Field(default=None, alias="projectId", min_length=1)

    model_config = {"populate_by_name": True}


class BroadcastResult(BaseModel):
    delivered: int


# ─── Connections ────────────────────────────────────────

class ConnectionRead(BaseModel):
    id: str
    project_id: Optional[str]
    user_id: Optional[str]
    state: str
    is_alive: bool
    connected_at: datetime
    last_seen_at: datetime


class RealtimeStats(BaseModel):
    connections: int
    projects: dict[str, int]
    accepting: bool
    degraded: bool
    feeds: dict[str, dict[str, Any]]
