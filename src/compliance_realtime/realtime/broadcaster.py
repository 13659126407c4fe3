"""Broadcaster — deliver frames to the right set of connections.

Learn: Delivery is best-effort and at-most-once. A frame is serialized
once, then written to every target concurrently; each write is bounded by
a timeout. A slow or broken socket only affects itself: its failure is
logged and the other targets still get the frame. Nothing is queued or
retried — a client that is mid-reconnect simply misses the event and
can query the REST API to catch up.

A connection whose writes keep failing is dropped from the registry
after `max_send_failures` consecutive failures.
"""

import asyncio
from typing import Iterable, Optional

import structlog

from compliance_realtime.realtime.connection import CLOSE_INTERNAL_ERROR, Connection
from compliance_realtime.realtime.events import ChangeEvent
from compliance_realtime.realtime.messages import RealTimeMessage
from compliance_realtime.realtime.registry import ConnectionRegistry

logger = structlog.get_logger()


class Broadcaster:
    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        send_timeout: float = 5.0,
        max_send_failures: int = 3,
    ):
        self.registry = registry
        self.send_timeout = send_timeout
        self.max_send_failures = max_send_failures

    # ─── Targeted delivery ────────────────────────────────

    async def broadcast_to_project(
        self, project_id: Optional[str], message: RealTimeMessage
    ) -> int:
        """Deliver to every connection scoped to `project_id`. Returns successful writes."""
        if not project_id:
            return 0
        return await self.deliver(self.registry.find_by_project(project_id), message)

    async def broadcast_to_all(self, message: RealTimeMessage) -> int:
        """Deliver to every registered connection (unscoped/system messages)."""
        return await self.deliver(self.registry.find_all(), message)

    async def deliver_event(self, event: ChangeEvent) -> int:
        """Deliver a change event to its project. Events without a project are dropped."""
        if event.project_id is None:
            logger.debug(
                "realtime.event_dropped",
                kind=event.kind.value,
                operation=event.operation.value,
                reason="no project id",
            )
            return 0
        delivered = await self.broadcast_to_project(event.project_id, event.to_message())
        logger.info(
            "realtime.event_broadcast",
            kind=event.kind.value,
            operation=event.operation.value,
            project_id=event.project_id,
            delivered=delivered,
        )
        return delivered

    async def send(self, connection: Connection, message: RealTimeMessage) -> bool:
        """Write one frame to one connection."""
        return await self._send_text(connection, message.to_wire())

    # ─── Internals ────────────────────────────────────────

    async def deliver(self, targets: Iterable[Connection], message: RealTimeMessage) -> int:
        targets = list(targets)
        if not targets:
            return 0
        text = message.to_wire()
        results = await asyncio.gather(*(self._send_text(c, text) for c in targets))
        return sum(1 for ok in results if ok)

    async def _send_text(self, connection: Connection, text: str) -> bool:
        if not connection.is_open:
            return False
        try:
            await asyncio.wait_for(connection.transport.send_text(text), self.send_timeout)
        except Exception as e:
            await self._record_failure(connection, e)
            return False
        connection.send_failures = 0
        return True

    async def _record_failure(self, connection: Connection, error: Exception) -> None:
        connection.send_failures += 1
        logger.warning(
            "realtime.send_failed",
            connection_id=connection.id,
            project_id=connection.project_id,
            error=str(error) or type(error).__name__,
            consecutive_failures=connection.send_failures,
        )
        if connection.send_failures >= self.max_send_failures:
            logger.warning(
                "realtime.connection_dropped",
                connection_id=connection.id,
                reason="repeated send failures",
            )
            await self.registry.remove(
                connection.id, code=CLOSE_INTERNAL_ERROR, reason="Delivery failures"
            )
