"""Connection registry — the authoritative map of live connections.

Learn: Everything in the realtime core runs on one asyncio event loop.
Every mutating method here is synchronous, so a lookup and the mutation
that follows it can never interleave with another coroutine. The only
awaits are transport closes, and those happen after the entry has been
detached from the map — a second remove() for the same id finds nothing
and is a no-op.

The registry is an explicitly constructed object owned by the gateway,
not module state: it is created at startup and torn down at shutdown.
"""

import asyncio
from collections import Counter
from datetime import datetime
from typing import Optional

import structlog

from compliance_realtime.realtime.connection import (
    CLOSE_GOING_AWAY,
    CLOSE_NORMAL,
    Connection,
    ConnectionState,
)
from compliance_realtime.realtime.messages import utcnow

logger = structlog.get_logger()


class DuplicateConnectionError(Exception):
    """A connection id was registered twice. Ids are generated, so this is a bug."""


class ConnectionRegistry:
    def __init__(self):
        # dicts keep insertion order → deterministic lookups
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    # ─── Membership ───────────────────────────────────────

    def register(self, connection: Connection) -> None:
        """Add a connection and mark it OPEN."""
        if connection.id in self._connections:
            raise DuplicateConnectionError(f"Connection {connection.id} already registered")
        self._connections[connection.id] = connection
        connection.state = ConnectionState.OPEN

    async def remove(
        self,
        connection_id: str,
        *,
        code: int = CLOSE_NORMAL,
        reason: str = "",
    ) -> bool:
        """Remove a connection and close its transport.

        Idempotent: returns False (and does nothing) if the id is absent.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False
        await connection.close(code, reason)
        return True

    async def close_all(self, *, code: int = CLOSE_GOING_AWAY, reason: str = "") -> int:
        """Close every registered transport, then clear the registry."""
        connections = list(self._connections.values())
        await asyncio.gather(*(c.close(code, reason) for c in connections))
        self._connections.clear()
        return len(connections)

    # ─── Lookup ───────────────────────────────────────────

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def find_by_project(self, project_id: str) -> list[Connection]:
        """Connections scoped to `project_id`, in registration order."""
        return [c for c in self._connections.values() if c.project_id == project_id]

    def find_all(self) -> list[Connection]:
        return list(self._connections.values())

    def count_by_project(self) -> dict[str, int]:
        """Number of connections per project scope (unscoped ones excluded)."""
        counts = Counter(
            c.project_id for c in self._connections.values() if c.project_id is not None
        )
        return dict(counts)

    # ─── Per-connection state ─────────────────────────────

    def update_liveness(
        self,
        connection_id: str,
        responded_at: Optional[datetime] = None,
    ) -> bool:
        """Record a liveness response. No-op if the connection was already evicted."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        connection.last_seen_at = responded_at or utcnow()
        connection.is_alive = True
        return True

    def set_project_scope(self, connection_id: str, project_id: Optional[str]) -> bool:
        """Replace the connection's project scope (None = unscoped)."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        previous = connection.project_id
        connection.project_id = project_id
        logger.info(
            "realtime.scope_changed",
            connection_id=connection_id,
            project_id=project_id,
            previous_project_id=previous,
        )
        return True
