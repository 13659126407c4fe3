"""Connections — one entry per live dashboard socket.

Learn: The registry owns each Connection, and each Connection owns its
transport. Closing goes through Connection.close(), which releases the
transport exactly once no matter how many paths (client disconnect,
liveness eviction, shutdown) race to close it.

Transport is the small surface the realtime core needs from a socket.
WebSocketTransport adapts Starlette's WebSocket to it; tests plug in
fakes that record frames.

Lifecycle: CONNECTING → OPEN → CLOSED. There is no way back to OPEN —
a client that drops must reconnect and gets a brand-new id.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import structlog
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from compliance_realtime.realtime.messages import utcnow

logger = structlog.get_logger()

# Close codes (4000-4999 are application-defined)
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_INTERNAL_ERROR = 1011
CLOSE_TRY_AGAIN_LATER = 1013
CLOSE_LIVENESS_TIMEOUT = 4000
CLOSE_UNAUTHORIZED = 4001


def new_connection_id() -> str:
    return f"conn_{uuid.uuid4().hex}"


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Transport(ABC):
    """What the realtime core needs from a client socket."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while frames can still be written."""

    @abstractmethod
    async def send_text(self, text: str) -> None:
        ...

    @abstractmethod
    async def receive(self) -> str | bytes:
        """Next inbound frame, text or binary. Raises WebSocketDisconnect once the peer is gone."""

    @abstractmethod
    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        ...


class WebSocketTransport(Transport):
    """Transport over a Starlette/FastAPI WebSocket (already accepted)."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> None:
        await self.websocket.send_text(text)

    async def receive(self) -> str | bytes:
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", CLOSE_NORMAL), message.get("reason"))
        # Binary frames carry "bytes" instead of "text"
        text = message.get("text")
        if text is not None:
            return text
        return message.get("bytes") or b""

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        # Nothing to release once either side has already closed
        if not self.is_open:
            return
        await self.websocket.close(code=code, reason=reason)


@dataclass(eq=False)
class Connection:
    id: str
    transport: Transport
    project_id: Optional[str] = None
    user_id: Optional[str] = None
    connected_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)
    is_alive: bool = True
    state: ConnectionState = ConnectionState.CONNECTING
    send_failures: int = 0
    _closed: bool = field(default=False, init=False, repr=False)

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN and self.transport.is_open

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> bool:
        """Release the transport. Returns False if it was already released."""
        if self._closed:
            return False
        # Flip before awaiting so a concurrent close is a no-op
        self._closed = True
        self.state = ConnectionState.CLOSED
        try:
            await self.transport.close(code, reason)
        except Exception as e:
            # Peer already gone; the handle counts as released
            logger.debug(
                "realtime.transport_close_failed",
                connection_id=self.id,
                error=str(e),
            )
        return True

    def summary(self) -> dict[str, Any]:
        """JSON-friendly view for the stats API."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "state": self.state.value,
            "is_alive": self.is_alive,
            "connected_at": self.connected_at,
            "last_seen_at": self.last_seen_at,
        }
