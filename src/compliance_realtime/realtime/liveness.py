"""Liveness monitor — ping/pong eviction of dead connections.

Learn: Each connection is either ALIVE (is_alive=True) or PENDING_CHECK
(is_alive=False). Every tick:

1. Connections still PENDING_CHECK never answered the previous ping →
   evicted (removed from the registry, socket closed with 4000).
2. Every other connection is flipped to PENDING_CHECK and sent a PING.

A PONG (or a client PING) flips the connection back to ALIVE via
registry.update_liveness(). So a silent client survives one tick and is
evicted on the next — 60s with the default 30s interval. This catches
half-open TCP connections and crashed browsers long before the OS would.
"""

import asyncio
import uuid
from typing import Optional

import structlog

from compliance_realtime.realtime.broadcaster import Broadcaster
from compliance_realtime.realtime.connection import CLOSE_LIVENESS_TIMEOUT
from compliance_realtime.realtime.messages import ping_message
from compliance_realtime.realtime.registry import ConnectionRegistry

logger = structlog.get_logger()


class LivenessMonitor:
    def __init__(
        self,
        registry: ConnectionRegistry,
        broadcaster: Broadcaster,
        *,
        interval: float = 30.0,
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.interval = interval
        self.ticks = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> list[str]:
        """Run one monitor tick. Returns the ids of evicted connections."""
        self.ticks += 1

        # Decide every connection's fate before the first await
        expired: list[str] = []
        to_ping = []
        for connection in self.registry.find_all():
            if not connection.is_alive:
                expired.append(connection.id)
            else:
                connection.is_alive = False
                to_ping.append(connection)

        for connection_id in expired:
            logger.info("liveness.evicted", connection_id=connection_id, tick=self.ticks)

        await asyncio.gather(
            *(
                self.registry.remove(
                    cid, code=CLOSE_LIVENESS_TIMEOUT, reason="Liveness timeout"
                )
                for cid in expired
            )
        )
        await self.broadcaster.deliver(to_ping, ping_message(f"ping_{uuid.uuid4().hex[:12]}"))

        if expired:
            logger.info(
                "liveness.sweep",
                tick=self.ticks,
                evicted=len(expired),
                pinged=len(to_ping),
            )
        return expired

    async def run_loop(self) -> None:
        """Sweep every `interval` seconds until stopped."""
        self._running = True
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                if not self._running:
                    break
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("liveness.sweep_failed", tick=self.ticks)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_loop())
        return self._task

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
