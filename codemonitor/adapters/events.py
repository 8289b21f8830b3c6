"""Notification types published by the session orchestration core.

Each notification is a typed dataclass, convertible to and from a plain
dict for JSON/SSE delivery to the UI layer.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Notification:
    """Base notification from the orchestration core."""
    event_type: str = ""
    workspace_id: str | None = None


@dataclass
class SessionCreated(Notification):
    event_type: str = "session_created"
    session_id: str = ""
    kind: str = ""
    status: str = ""


@dataclass
class SessionStatusChanged(Notification):
    event_type: str = "session_status_changed"
    session_id: str = ""
    old_status: str = ""
    new_status: str = ""
    reason: str | None = None


@dataclass
class SessionEventAppended(Notification):
    event_type: str = "session_event_appended"
    session_id: str = ""
    seq: int = 0
    role: str = ""
    kind: str = ""
    text: str = ""


@dataclass
class ApprovalRequested(Notification):
    event_type: str = "approval_requested"
    session_id: str = ""
    request_id: str = ""
    action: dict[str, Any] = field(default_factory=dict)


@dataclass
class ApprovalResolved(Notification):
    event_type: str = "approval_resolved"
    session_id: str = ""
    request_id: str = ""
    decision: str = ""
    reason: str | None = None


@dataclass
class WorkspaceConnectionChanged(Notification):
    event_type: str = "workspace_connection_changed"
    old_state: str = ""
    new_state: str = ""


@dataclass
class SessionDeleted(Notification):
    event_type: str = "session_deleted"
    session_id: str = ""


# Map of event type strings to dataclass constructors
_EVENT_MAP: dict[str, type[Notification]] = {
    "session_created": SessionCreated,
    "session_status_changed": SessionStatusChanged,
    "session_event_appended": SessionEventAppended,
    "approval_requested": ApprovalRequested,
    "approval_resolved": ApprovalResolved,
    "workspace_connection_changed": WorkspaceConnectionChanged,
    "session_deleted": SessionDeleted,
}


def event_to_dict(event: Notification) -> dict[str, Any]:
    """Convert a typed notification to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Clients key on "event", as in the SSE "event:" field.
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> Notification:
    """Convert a plain dict back to its typed notification."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, Notification)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
