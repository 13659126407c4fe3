"""Change events — the normalized form of one upstream data change.

Learn: Each watched table produces raw change records shaped like

    {"operationType": "update",
     "fullDocument": {"id": 7, "project_id": "proj-1", ...},
     "documentKey": {"id": 7}}

normalize_change() turns one of those into a ChangeEvent tagged with the
event kind for its source (metrics → metric-update, issues →
issue-update, notifications → quality-update) and the project it belongs
to. Events are transient: built, delivered once, discarded.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

from compliance_realtime.realtime.messages import MessageType, RealTimeMessage, utcnow


class SourceKind(str, Enum):
    """The three watched collections."""

    METRICS = "metrics"
    ISSUES = "issues"
    NOTIFICATIONS = "notifications"


class EventKind(str, Enum):
    METRIC_UPDATE = "metric-update"
    ISSUE_UPDATE = "issue-update"
    QUALITY_UPDATE = "quality-update"
    STATUS_UPDATE = "status-update"


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    REPLACE = "replace"


SOURCE_EVENT_KINDS: dict[SourceKind, EventKind] = {
    SourceKind.METRICS: EventKind.METRIC_UPDATE,
    SourceKind.ISSUES: EventKind.ISSUE_UPDATE,
    SourceKind.NOTIFICATIONS: EventKind.QUALITY_UPDATE,
}

EVENT_MESSAGE_TYPES: dict[EventKind, MessageType] = {
    EventKind.METRIC_UPDATE: MessageType.METRIC_UPDATE,
    EventKind.ISSUE_UPDATE: MessageType.ISSUE_UPDATE,
    EventKind.QUALITY_UPDATE: MessageType.QUALITY_UPDATE,
    EventKind.STATUS_UPDATE: MessageType.STATUS_UPDATE,
}

# Document fields that may carry the project reference
PROJECT_ID_FIELDS = ("projectId", "project_id")


class InvalidChangeError(Exception):
    """Raised when a raw change record can't be normalized."""


@dataclass(frozen=True)
class ChangeEvent:
    kind: EventKind
    project_id: Optional[str]
    operation: Operation
    document: Optional[dict[str, Any]] = None
    document_key: Optional[dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)
    correlation_id: Optional[str] = None

    def to_message(self) -> RealTimeMessage:
        """Outbound frame: the changed document plus operation and key."""
        return RealTimeMessage(
            type=EVENT_MESSAGE_TYPES[self.kind],
            project_id=self.project_id,
            data={
                "operation": self.operation.value,
                "document": self.document,
                "documentKey": self.document_key,
            },
            timestamp=self.timestamp,
            message_id=self.correlation_id,
        )


def extract_project_id(document: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Project reference of a document, as an opaque string key."""
    if not document:
        return None
    for key in PROJECT_ID_FIELDS:
        value = document.get(key)
        if value is not None and value != "":
            return str(value)
    return None


def normalize_change(source: SourceKind, raw: Any) -> ChangeEvent:
    """Convert one raw change record from `source` into a ChangeEvent.

    Raises InvalidChangeError for records that aren't change records.
    """
    if not isinstance(raw, Mapping):
        raise InvalidChangeError(f"change record must be an object, got {type(raw).__name__}")

    op_name = raw.get("operationType")
    try:
        operation = Operation(str(op_name).lower())
    except ValueError:
        raise InvalidChangeError(f"unsupported operationType: {op_name!r}")

    document = raw.get("fullDocument")
    if document is not None and not isinstance(document, Mapping):
        raise InvalidChangeError("fullDocument must be an object")
    document_key = raw.get("documentKey")
    if document_key is not None and not isinstance(document_key, Mapping):
        raise InvalidChangeError("documentKey must be an object")

    return ChangeEvent(
        kind=SOURCE_EVENT_KINDS[SourceKind(source)],
        project_id=extract_project_id(document),
        operation=operation,
        document=dict(document) if document is not None else None,
        document_key=dict(document_key) if document_key is not None else None,
    )
