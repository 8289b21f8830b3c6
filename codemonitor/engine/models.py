"""Core data models for the session orchestration core.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionKind(str, Enum):
    """Which transport drives a session."""
    REMOTE = "remote"
    LOCAL_PROCESS = "local-process"


class SessionStatus(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    CREATED = "created"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting-approval"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.ABORTED,
})


class EventRole(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class PayloadKind(str, Enum):
    """What a transcript entry carries."""
    TEXT = "text"
    TOOL_CALL = "tool-call"
    DIFF = "diff"
    APPROVAL_REQUEST = "approval-request"
    APPROVAL_DECISION = "approval-decision"
    DIAGNOSTIC = "diagnostic"


class ApprovalDecision(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ConnectionState(str, Enum):
    """Connection state of a workspace to the remote backend."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_LOCAL_MODEL = "gpt-5.2-codex"
DEFAULT_LOCAL_THINKING = "xhigh"
DEFAULT_LOCAL_PROVIDER = "github-copilot"

DEFAULT_SYSTEM_PROMPT = """You are a coding agent based on GPT-5-Codex.

## Editing constraints
- Default to ASCII when editing or creating files.
- Add succinct code comments only where code is not self-explanatory.
- You may be in a dirty git worktree. NEVER revert changes you did not make
  unless explicitly requested.
- Do not amend a commit unless explicitly requested to do so.
- NEVER use destructive commands like `git reset --hard` unless requested.

## Exploration and reading files
- Decide which files you need before any tool call and read them together.
- Prefer parallel tool calls; go sequential only when a result is required.

## Tool use
- If a tool exists for a task, use it instead of a terminal command.
- Use `bash` for terminal commands, `read` to read files, `edit` to edit.

## Presenting your work
- Be concise; lead with a quick explanation, then details.
- Use Markdown; wrap code samples in fenced blocks with language hints.
"""


@dataclass
class LocalAgentConfig:
    """Defaults for the locally spawned CLI agent."""
    model: str = DEFAULT_LOCAL_MODEL
    thinking: str = DEFAULT_LOCAL_THINKING
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    provider: str = DEFAULT_LOCAL_PROVIDER


@dataclass
class SessionConfig:
    """Per-session launch parameters.

    Remote sessions use ``title`` and ``model``; local sessions use
    every field, with ``prompt`` being the single task handed to the
    process at launch.
    """
    prompt: str = ""
    title: str | None = None
    model: str | None = None
    thinking: str | None = None
    system_prompt: str | None = None
    provider: str | None = None
    extra_args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SessionConfig:
        """Build from a loose dict, ignoring unknown keys."""
        data = dict(data or {})
        # UI clients send the reasoning level as "effort" as often as "thinking".
        if "thinking" not in data and "effort" in data:
            data["thinking"] = data["effort"]
        config = cls(**{
            k: v for k, v in data.items()
            if k in cls.__dataclass_fields__
        })
        config.extra_args = [str(a) for a in (config.extra_args or [])]
        config.env = {str(k): str(v) for k, v in (config.env or {}).items()}
        return config


@dataclass(frozen=True)
class SessionEvent:
    """One immutable, sequence-numbered transcript entry."""
    session_id: str
    seq: int
    role: EventRole
    kind: PayloadKind
    text: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "seq": self.seq,
            "role": self.role.value,
            "kind": self.kind.value,
            "text": self.text,
            "data": dict(self.data),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class TransportEvent:
    """An output item produced by a transport, before sequencing."""
    role: EventRole = EventRole.AGENT
    kind: PayloadKind = PayloadKind.TEXT
    text: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    requires_approval: bool = False
    # Backend-side identifier of a gated action (permission id, call id).
    action_id: str | None = None


@dataclass
class ApprovalRequest:
    """A gated action waiting for a human decision."""
    session_id: str
    workspace_id: str
    action: dict[str, Any] = field(default_factory=dict)
    action_id: str | None = None
    request_id: str = field(default_factory=_make_id)
    decision: ApprovalDecision = ApprovalDecision.PENDING
    reason: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    resolved_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.decision == ApprovalDecision.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "session_id": self.session_id,
            "workspace_id": self.workspace_id,
            "action": dict(self.action),
            "action_id": self.action_id,
            "decision": self.decision.value,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(),
            "resolved_at": (
                self.resolved_at.isoformat() if self.resolved_at else None
            ),
        }


@dataclass
class Workspace:
    """A directory-scoped project context owning zero or more sessions."""
    path: str
    name: str = ""
    remote_url: str | None = None
    workspace_id: str = field(default_factory=_make_id)
    connection: ConnectionState = ConnectionState.DISCONNECTED
    session_ids: set[str] = field(default_factory=set)
    consecutive_health_failures: int = 0
    last_model: str | None = None
    last_thinking: str | None = None
    last_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "path": self.path,
            "name": self.name,
            "remote_url": self.remote_url,
            "connection": self.connection.value,
            "session_ids": sorted(self.session_ids),
            "last_model": self.last_model,
            "last_thinking": self.last_thinking,
            "last_session_id": self.last_session_id,
        }


@dataclass
class Session:
    """Registry-owned record of one session."""
    session_id: str
    workspace_id: str
    kind: SessionKind
    status: SessionStatus = SessionStatus.CREATED
    config: SessionConfig = field(default_factory=SessionConfig)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    exit_code: int | None = None
    error: str | None = None
    abort_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe view for callers outside the registry."""
        return {
            "session_id": self.session_id,
            "workspace_id": self.workspace_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "config": asdict(self.config),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "exit_code": self.exit_code,
            "error": self.error,
        }
