"""Change watcher — turn upstream change feeds into broadcast events.

Learn: The watcher runs one supervisor task per source (metrics, issues,
notifications). Each supervisor:

1. Opens its feed (LISTEN on the table's channel)
2. Reads raw changes one at a time, normalizes each into a ChangeEvent
   and hands it to the broadcaster before reading the next — so events
   from one source are delivered in the order the source emitted them
3. On feed failure: logs it, marks the source degraded, closes the
   handle and reopens after exponential backoff (1s, 2s, 4s … capped)

Sources are independent: a dead issues feed doesn't stall metrics, and
there's no ordering across sources. With resubscribe=False a failed feed
is logged and left stopped; the process keeps running.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

import structlog

from compliance_realtime.realtime.events import (
    ChangeEvent,
    InvalidChangeError,
    SourceKind,
    normalize_change,
)
from compliance_realtime.realtime.feeds import ChangeFeed, ChangeFeedError

logger = structlog.get_logger()

EventHandler = Callable[[ChangeEvent], Awaitable[Any]]


class FeedState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPED = "stopped"


@dataclass
class FeedStatus:
    """Runtime status of one source, for health checks."""
    source: SourceKind
    state: FeedState = FeedState.STARTING
    failures: int = 0
    events: int = 0
    last_error: Optional[str] = None
    last_event_at: Optional[datetime] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "events": self.events,
            "last_error": self.last_error,
            "last_event_at": self.last_event_at.isoformat() if self.last_event_at else None,
        }


class ChangeWatcher:
    def __init__(
        self,
        feeds: Mapping[SourceKind, ChangeFeed],
        on_event: EventHandler,
        *,
        resubscribe: bool = True,
        backoff_initial: float = 1.0,
        backoff_max: float = 60.0,
    ):
        self.feeds = dict(feeds)
        self.on_event = on_event
        self.resubscribe = resubscribe
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.status = {source: FeedStatus(source) for source in self.feeds}
        self._tasks: dict[SourceKind, asyncio.Task] = {}
        self._running = False

    # ─── Normalization ────────────────────────────────────

    def on_change(self, source: SourceKind, raw: Any) -> ChangeEvent:
        """Normalize one raw change record from `source`."""
        return normalize_change(source, raw)

    async def handle_change(self, source: SourceKind, raw: Any) -> Optional[ChangeEvent]:
        """Normalize and forward one change. Never raises for bad records or failed delivery."""
        try:
            event = self.on_change(source, raw)
        except InvalidChangeError as e:
            logger.warning("watcher.invalid_change", source=source.value, error=str(e))
            return None

        status = self.status.get(source)
        if status is not None:
            status.events += 1
            status.last_event_at = event.timestamp

        try:
            await self.on_event(event)
        except Exception:
            logger.exception(
                "watcher.delivery_failed",
                source=source.value,
                project_id=event.project_id,
            )
        return event

    # ─── Lifecycle ────────────────────────────────────────

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for source, feed in self.feeds.items():
            self._tasks[source] = asyncio.create_task(
                self._supervise(source, feed), name=f"watcher:{source.value}"
            )
        logger.info("watcher.started", sources=[s.value for s in self.feeds])

    async def stop(self) -> None:
        """Cancel every supervisor and release every feed handle."""
        self._running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        # Supervisors close their own feed on the way out; this covers
        # feeds whose task never got to run
        for source, feed in self.feeds.items():
            await self._close_feed(source, feed)
            self.status[source].state = FeedState.STOPPED
        logger.info("watcher.stopped")

    # ─── Health ───────────────────────────────────────────

    @property
    def degraded(self) -> bool:
        return any(s.state != FeedState.RUNNING for s in self.status.values())

    def health(self) -> dict[str, Any]:
        return {source.value: status.as_dict() for source, status in self.status.items()}

    # ─── Supervisor ───────────────────────────────────────

    async def _supervise(self, source: SourceKind, feed: ChangeFeed) -> None:
        status = self.status[source]
        delay = self.backoff_initial
        while self._running:
            try:
                await feed.open()
                status.state = FeedState.RUNNING
                delay = self.backoff_initial
                async for raw in feed.changes():
                    await self.handle_change(source, raw)
                raise ChangeFeedError(f"{feed.name} ended")
            except asyncio.CancelledError:
                await self._close_feed(source, feed)
                raise
            except Exception as e:
                status.failures += 1
                status.last_error = str(e) or type(e).__name__
                status.state = FeedState.DEGRADED
                logger.error(
                    "watcher.feed_failed",
                    source=source.value,
                    feed=feed.name,
                    error=status.last_error,
                    failures=status.failures,
                    retry_in=delay if self.resubscribe else None,
                )
                await self._close_feed(source, feed)

            if not self.resubscribe:
                status.state = FeedState.STOPPED
                return
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.backoff_max)

    async def _close_feed(self, source: SourceKind, feed: ChangeFeed) -> None:
        try:
            await feed.close()
        except Exception as e:
            logger.warning("watcher.feed_close_failed", source=source.value, error=str(e))
