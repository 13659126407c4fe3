"""Redis pub/sub — broadcasts triggered from other processes.

Learn: The REST layer that writes compliance data often runs in a
different process from the WebSocket gateway. It can't reach the
gateway's registry directly, so it PUBLISHes a ready-made wire frame:

    await publish_broadcast(MessageType.METRIC_UPDATE, {...}, project_id="proj-1")

BroadcastRelay (running inside the gateway) PSUBSCRIBEs to every
broadcast channel and forwards each frame to the gateway, which delivers
it like any other event. Redis pub/sub is fire-and-forget: if no gateway
is listening the frame is lost, which matches the best-effort delivery
of the realtime core.

Channel naming: compliance:broadcast:{project_id}, or
compliance:broadcast:all for unscoped messages.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError

from compliance_realtime.config import settings
from compliance_realtime.realtime.messages import MessageType, RealTimeMessage

logger = structlog.get_logger()

CHANNEL_PREFIX = "compliance:broadcast:"
ALL_PROJECTS = "all"

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> aioredis.Redis:
    """Get the Redis connection (must be initialized first)."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


def broadcast_channel(project_id: Optional[str]) -> str:
    return f"{CHANNEL_PREFIX}{project_id or ALL_PROJECTS}"


async def publish_broadcast(
    message_type: MessageType,
    data: dict[str, Any],
    project_id: Optional[str] = None,
) -> int:
    """Publish a frame for the gateway(s) to deliver. Returns the number of listeners."""
    r = get_redis()
    message = RealTimeMessage(type=message_type, project_id=project_id, data=data)
    return await r.publish(broadcast_channel(project_id), message.to_wire())


class BroadcastRelay:
    """Forward frames published on Redis to the local gateway."""

    def __init__(
        self,
        redis: aioredis.Redis,
        forward: Callable[[RealTimeMessage], Awaitable[int]],
        *,
        retry_delay: float = 5.0,
    ):
        self.redis = redis
        self.forward = forward
        self.retry_delay = retry_delay
        self.relayed = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def handle(self, raw: str) -> Optional[int]:
        """Parse one published frame and forward it. Bad frames are logged and skipped."""
        try:
            message = RealTimeMessage.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("relay.bad_message", error=str(e))
            return None
        delivered = await self.forward(message)
        self.relayed += 1
        return delivered

    async def run_loop(self) -> None:
        self._running = True
        while self._running:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
                logger.info("relay.subscribed", pattern=f"{CHANNEL_PREFIX}*")
                async for message in pubsub.listen():
                    if message["type"] == "pmessage":
                        await self.handle(message["data"])
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("relay.failed", error=str(e), retry_in=self.retry_delay)
                await asyncio.sleep(self.retry_delay)
            finally:
                await pubsub.aclose()

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
