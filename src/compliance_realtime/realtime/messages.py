"""Wire protocol — the JSON frames exchanged with dashboard clients.

Learn: Inbound and outbound frames share one shape:

    {"type": "METRIC_UPDATE", "projectId": "proj-1", "data": {...},
     "timestamp": "2026-01-01T00:00:00Z", "messageId": "..."}

Keys are camelCase on the wire (the dashboard is JavaScript) and
snake_case in Python; pydantic aliases do the translation. Fields that
are None are omitted from outbound frames.

Outbound frames are validated strictly (RealTimeMessage). Inbound frames
are parsed leniently (InboundMessage) so an unknown "type" can be logged
and dropped instead of being reported as a malformed frame.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError


class MessageType(str, Enum):
    METRIC_UPDATE = "METRIC_UPDATE"
    ISSUE_UPDATE = "ISSUE_UPDATE"
    QUALITY_UPDATE = "QUALITY_UPDATE"
    STATUS_UPDATE = "STATUS_UPDATE"
    PING = "PING"
    PONG = "PONG"
    # Client → server only
    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"


class InvalidFrameError(Exception):
    """Raised when an inbound frame is not valid JSON or not a frame object."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RealTimeMessage(BaseModel):
    """An outbound frame."""

    type: MessageType
    project_id: Optional[str] = Field(default=None, alias="projectId")
    data: Optional[dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)
    message_id: Optional[str] = Field(default=None, alias="messageId")

    model_config = {"populate_by_name": True}

    def to_wire(self) -> str:
        """Serialize to the JSON text sent over the socket."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class InboundMessage(BaseModel):
    """An inbound frame. `type` stays a plain string until dispatch."""

    type: str
    project_id: Optional[str] = Field(default=None, alias="projectId")
    data: Optional[dict[str, Any]] = None
    timestamp: Optional[datetime] = None
    message_id: Optional[str] = Field(default=None, alias="messageId")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @property
    def kind(self) -> Optional[MessageType]:
        """The known message type, or None for anything unrecognized."""
        try:
            return MessageType(self.type)
        except ValueError:
            return None


def parse_frame(raw: str | bytes) -> InboundMessage:
    """Parse one inbound frame. Raises InvalidFrameError on bad input."""
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidFrameError(f"binary frame is not UTF-8: {e}") from e
    try:
        return InboundMessage.model_validate_json(raw)
    except ValidationError as e:
        raise InvalidFrameError(str(e)) from e


# ─── Frame builders ───────────────────────────────────────


def status_message(
    message: str,
    project_id: Optional[str] = None,
    **extra: Any,
) -> RealTimeMessage:
    """STATUS_UPDATE carrying a human-readable message."""
    return RealTimeMessage(
        type=MessageType.STATUS_UPDATE,
        project_id=project_id,
        data={"message": message, **extra},
    )


def error_message(error: str) -> RealTimeMessage:
    """STATUS_UPDATE carrying an error (sent in reply to a bad frame)."""
    return RealTimeMessage(type=MessageType.STATUS_UPDATE, data={"error": error})


def ping_message(message_id: Optional[str] = None) -> RealTimeMessage:
    return RealTimeMessage(type=MessageType.PING, message_id=message_id)


def pong_message(message_id: Optional[str] = None) -> RealTimeMessage:
    return RealTimeMessage(type=MessageType.PONG, message_id=message_id)
