"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidStateError rather than silently proceeding.

State Diagram:

    CREATED ──> RUNNING ──┬──> COMPLETED
                          │
                          ├──> AWAITING_APPROVAL ──> RUNNING
                          │
                          └──> FAILED

    Any non-terminal state ──> ABORTED  (explicit abort)
    COMPLETED, FAILED, ABORTED are absorbing.
"""
from __future__ import annotations

from .errors import InvalidStateError
from .models import TERMINAL_STATUSES, SessionStatus

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.CREATED: {
        SessionStatus.RUNNING,
        SessionStatus.FAILED,
        SessionStatus.ABORTED,
    },
    SessionStatus.RUNNING: {
        SessionStatus.AWAITING_APPROVAL,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.ABORTED,
    },
    SessionStatus.AWAITING_APPROVAL: {
        SessionStatus.RUNNING,
        SessionStatus.FAILED,
        SessionStatus.ABORTED,
    },
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
    SessionStatus.ABORTED: set(),
}


def is_terminal(status: SessionStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_deletable(status: SessionStatus) -> bool:
    """Terminal sessions and never-started sessions may be deleted."""
    return is_terminal(status) or status == SessionStatus.CREATED


def validate_transition(
    current: SessionStatus,
    target: SessionStatus,
    session_id: str = "?",
) -> None:
    """Validate a state transition. Raises InvalidStateError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise InvalidStateError(
            session_id,
            f"invalid status transition {current.value} -> {target.value}; "
            f"allowed from {current.value}: {allowed_str}",
        )
