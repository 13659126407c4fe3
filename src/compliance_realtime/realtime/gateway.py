"""Real-time gateway — composition root of the realtime core.

Learn: The gateway owns one instance of each component and wires them:

    change feeds → ChangeWatcher → Broadcaster → ConnectionRegistry → sockets
                                        ↑
                   LivenessMonitor ─────┘ (PING every tick, evict the silent)

serve() runs one client connection from accept to close:
register → welcome frame → read frames until the socket closes → remove.
Inbound frames drive the control protocol:

    PING         → PONG with the same messageId, mark alive
    PONG         → mark alive
    SUBSCRIBE    → set the connection's project scope (last one wins)
    UNSUBSCRIBE  → clear the scope
    METRIC_UPDATE with projectId → legacy spelling of SUBSCRIBE

Bad input never takes the gateway down: malformed frames get an error
STATUS_UPDATE, unknown types are logged and dropped.

Shutdown order matters — stop accepting, close the change feeds, close
every socket, clear the registry — so no event is delivered to a
connection that is already being torn down.
"""

from typing import Any, Mapping, Optional

import structlog
from starlette.websockets import WebSocketDisconnect

from compliance_realtime.realtime.broadcaster import Broadcaster
from compliance_realtime.realtime.connection import (
    CLOSE_GOING_AWAY,
    CLOSE_INTERNAL_ERROR,
    CLOSE_TRY_AGAIN_LATER,
    Connection,
    Transport,
    new_connection_id,
)
from compliance_realtime.realtime.events import SourceKind
from compliance_realtime.realtime.feeds import ChangeFeed
from compliance_realtime.realtime.liveness import LivenessMonitor
from compliance_realtime.realtime.messages import (
    InboundMessage,
    InvalidFrameError,
    MessageType,
    RealTimeMessage,
    error_message,
    parse_frame,
    pong_message,
    status_message,
)
from compliance_realtime.realtime.pubsub import BroadcastRelay
from compliance_realtime.realtime.registry import ConnectionRegistry, DuplicateConnectionError
from compliance_realtime.realtime.watcher import ChangeWatcher

logger = structlog.get_logger()

WELCOME_MESSAGE = "Connected to real-time compliance data service"


class RealTimeGateway:
    def __init__(
        self,
        feeds: Optional[Mapping[SourceKind, ChangeFeed]] = None,
        *,
        ping_interval: float = 30.0,
        send_timeout: float = 5.0,
        max_send_failures: int = 3,
        feed_resubscribe: bool = True,
        feed_backoff_initial: float = 1.0,
        feed_backoff_max: float = 60.0,
    ):
        self.registry = ConnectionRegistry()
        self.broadcaster = Broadcaster(
            self.registry,
            send_timeout=send_timeout,
            max_send_failures=max_send_failures,
        )
        self.monitor = LivenessMonitor(self.registry, self.broadcaster, interval=ping_interval)
        self.watcher = ChangeWatcher(
            feeds or {},
            self.broadcaster.deliver_event,
            resubscribe=feed_resubscribe,
            backoff_initial=feed_backoff_initial,
            backoff_max=feed_backoff_max,
        )
        self.relay: Optional[BroadcastRelay] = None
        self.accepting = False

    @classmethod
    def from_settings(cls, settings, feeds: Optional[Mapping[SourceKind, ChangeFeed]] = None):
        return cls(
            feeds,
            ping_interval=settings.ping_interval_seconds,
            send_timeout=settings.send_timeout_seconds,
            max_send_failures=settings.max_send_failures,
            feed_resubscribe=settings.feed_resubscribe,
            feed_backoff_initial=settings.feed_backoff_initial_seconds,
            feed_backoff_max=settings.feed_backoff_max_seconds,
        )

    # ─── Lifecycle ────────────────────────────────────────

    def attach_relay(self, relay: BroadcastRelay) -> None:
        self.relay = relay

    async def start(self) -> None:
        self.accepting = True
        self.watcher.start()
        self.monitor.start()
        if self.relay is not None:
            self.relay.start()
        logger.info("realtime.gateway_started", ping_interval=self.monitor.interval)

    async def stop(self) -> None:
        # 1. No new connections
        self.accepting = False
        # 2. No new events
        await self.watcher.stop()
        if self.relay is not None:
            await self.relay.stop()
        await self.monitor.stop()
        # 3 + 4. Close every socket, then clear the registry
        closed = await self.registry.close_all(
            code=CLOSE_GOING_AWAY, reason="Server shutting down"
        )
        logger.info("realtime.gateway_stopped", closed_connections=closed)

    # ─── Per-connection loop ──────────────────────────────

    async def serve(self, transport: Transport, user_id: Optional[str] = None) -> None:
        """Run one client connection until it closes or is evicted."""
        if not self.accepting:
            await transport.close(CLOSE_TRY_AGAIN_LATER, "Service unavailable")
            return

        connection = Connection(id=new_connection_id(), transport=transport, user_id=user_id)
        try:
            self.registry.register(connection)
        except DuplicateConnectionError:
            logger.exception("realtime.register_failed", connection_id=connection.id)
            await connection.close(CLOSE_INTERNAL_ERROR, "Registration failed")
            return

        log = logger.bind(connection_id=connection.id)
        log.info("realtime.connected", user_id=user_id, total=len(self.registry))

        await self.broadcaster.send(
            connection, status_message(WELCOME_MESSAGE, connectionId=connection.id)
        )

        try:
            while True:
                raw = await transport.receive()
                await self.handle_frame(connection, raw)
        except WebSocketDisconnect as e:
            if connection.closed:
                # Evicted or shut down while waiting for a frame
                log.info("realtime.closed_by_server", code=e.code)
            else:
                log.info("realtime.disconnected", code=e.code)
        except Exception as e:
            if connection.closed:
                log.info("realtime.closed_by_server")
            else:
                log.error("realtime.connection_error", error=str(e) or type(e).__name__)
        finally:
            await self.registry.remove(connection.id)

    async def handle_frame(self, connection: Connection, raw: str | bytes) -> None:
        """Parse and dispatch one inbound frame. Never raises for bad input."""
        try:
            message = parse_frame(raw)
        except InvalidFrameError as e:
            logger.warning(
                "realtime.invalid_frame", connection_id=connection.id, error=str(e)[:200]
            )
            await self.broadcaster.send(connection, error_message("Invalid message format"))
            return

        kind = message.kind
        if kind == MessageType.PING:
            self.registry.update_liveness(connection.id)
            await self.broadcaster.send(connection, pong_message(message.message_id))
        elif kind == MessageType.PONG:
            self.registry.update_liveness(connection.id)
        elif kind == MessageType.SUBSCRIBE and message.project_id:
            await self._subscribe(connection, message)
        elif kind == MessageType.METRIC_UPDATE and message.project_id:
            # Legacy clients subscribe by sending METRIC_UPDATE with a projectId
            await self._subscribe(connection, message)
        elif kind == MessageType.UNSUBSCRIBE:
            self.registry.set_project_scope(connection.id, None)
            await self.broadcaster.send(
                connection, status_message("Unsubscribed", subscribed=None)
            )
        else:
            logger.warning(
                "realtime.unknown_message",
                connection_id=connection.id,
                type=message.type,
            )

    async def _subscribe(self, connection: Connection, message: InboundMessage) -> None:
        project_id = message.project_id
        if not self.registry.set_project_scope(connection.id, project_id):
            return
        await self.broadcaster.send(
            connection,
            status_message(
                f"Subscribed to project {project_id}",
                project_id=project_id,
                subscribed=project_id,
            ),
        )

    # ─── Side-channel broadcasts ──────────────────────────

    async def publish(self, message: RealTimeMessage) -> int:
        """Deliver a prebuilt frame: to its project if it has one, else to everyone."""
        if message.project_id:
            return await self.broadcaster.broadcast_to_project(message.project_id, message)
        return await self.broadcaster.broadcast_to_all(message)

    async def broadcast_metric_update(self, project_id: str, data: dict[str, Any]) -> int:
        return await self._broadcast_typed(MessageType.METRIC_UPDATE, project_id, data)

    async def broadcast_issue_update(self, project_id: str, data: dict[str, Any]) -> int:
        return await self._broadcast_typed(MessageType.ISSUE_UPDATE, project_id, data)

    async def broadcast_quality_update(self, project_id: str, data: dict[str, Any]) -> int:
        return await self._broadcast_typed(MessageType.QUALITY_UPDATE, project_id, data)

    async def broadcast_status_update(
        self, message: str, project_id: Optional[str] = None
    ) -> int:
        """Status message to one project, or to every connection when unscoped."""
        delivered = await self.publish(status_message(message, project_id=project_id))
        logger.info(
            "realtime.status_broadcast",
            project_id=project_id,
            delivered=delivered,
        )
        return delivered

    async def _broadcast_typed(
        self, message_type: MessageType, project_id: str, data: dict[str, Any]
    ) -> int:
        message = RealTimeMessage(type=message_type, project_id=project_id, data=data)
        delivered = await self.broadcaster.broadcast_to_project(project_id, message)
        logger.info(
            "realtime.update_broadcast",
            type=message_type.value,
            project_id=project_id,
            delivered=delivered,
        )
        return delivered

    # ─── Introspection ────────────────────────────────────

    def connection_count(self) -> int:
        return len(self.registry)

    def connections_for_project(self, project_id: str) -> list[Connection]:
        return self.registry.find_by_project(project_id)

    def health(self) -> dict[str, Any]:
        return {
            "accepting": self.accepting,
            "connections": self.connection_count(),
            "monitor_ticks": self.monitor.ticks,
            "feeds": self.watcher.health(),
            "degraded": self.watcher.degraded,
        }
