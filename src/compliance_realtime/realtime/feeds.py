"""Change feeds — ordered streams of raw change records, one per table.

Learn: PostgreSQL row triggers (see db/migrations) call pg_notify on a
per-table channel with a JSON payload:

    {"operationType": "insert", "fullDocument": {...}, "documentKey": {"id": 1}}

PostgresChangeFeed holds a dedicated asyncpg connection that LISTENs on
one channel. asyncpg delivers notifications through a synchronous
callback, so payloads are pushed onto an asyncio.Queue and changes()
yields them in arrival order.

NOTIFY is fire-and-forget: if the LISTEN connection drops, notifications
sent meanwhile are lost. Connection loss surfaces as ChangeFeedError from
changes(); the watcher decides whether to reopen.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import asyncpg
import structlog

logger = structlog.get_logger()


class ChangeFeedError(Exception):
    """The upstream change stream failed or ended."""


class ChangeFeed(ABC):
    """One ordered source of raw change records."""

    name: str = "feed"

    @abstractmethod
    async def open(self) -> None:
        """Establish the subscription. Raises on failure."""

    @abstractmethod
    def changes(self) -> AsyncIterator[dict[str, Any]]:
        """Yield raw change records until the feed fails (ChangeFeedError)."""

    @abstractmethod
    async def close(self) -> None:
        """Release the subscription. Safe to call more than once."""


_TERMINATED = object()


class PostgresChangeFeed(ChangeFeed):
    """LISTEN on a PG NOTIFY channel over a dedicated asyncpg connection."""

    def __init__(self, dsn: str, channel: str):
        self.dsn = dsn
        self.channel = channel
        self.name = channel
        self._conn: Optional[asyncpg.Connection] = None
        self._queue: asyncio.Queue = asyncio.Queue()

    async def open(self) -> None:
        # Fresh queue per subscription, nothing stale from a dead connection
        self._queue = asyncio.Queue()
        self._conn = await asyncpg.connect(self.dsn)
        self._conn.add_termination_listener(self._on_terminate)
        await self._conn.add_listener(self.channel, self._on_notify)
        logger.info("feed.listening", channel=self.channel)

    async def changes(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _TERMINATED:
                raise ChangeFeedError(f"LISTEN connection for {self.channel} was lost")
            yield item

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        conn.remove_termination_listener(self._on_terminate)
        if conn.is_closed():
            return
        try:
            await conn.remove_listener(self.channel, self._on_notify)
        finally:
            await conn.close()
        logger.info("feed.closed", channel=self.channel)

    # ─── asyncpg callbacks (synchronous) ──────────────────

    def _on_notify(self, conn, pid, channel, payload):
        try:
            record = json.loads(payload)
        except (TypeError, ValueError):
            logger.warning("feed.bad_payload", channel=channel, payload=str(payload)[:200])
            return
        self._queue.put_nowait(record)

    def _on_terminate(self, conn):
        self._queue.put_nowait(_TERMINATED)
