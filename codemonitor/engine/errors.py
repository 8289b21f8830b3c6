"""Exception hierarchy for the session orchestration core.

Specific exceptions for each failure mode. Never bare
`except Exception` without justification.
"""
from __future__ import annotations


class OrchestrationError(Exception):
    """Base exception for all orchestration errors."""


class TransportUnavailableError(OrchestrationError):
    """Backend could not be reached after bounded retries."""
    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Transport unavailable ({target}): {reason}")


class BackendError(OrchestrationError):
    """Backend answered, but with an error payload. Not retried."""
    def __init__(self, target: str, status: int, message: str):
        self.target = target
        self.status = status
        self.message = message
        super().__init__(f"Backend error from {target} (HTTP {status}): {message}")


class ProcessExitedError(OrchestrationError):
    """Local agent process terminated with a non-zero exit code."""
    def __init__(self, session_id: str, exit_code: int, stderr: str = ""):
        self.session_id = session_id
        self.exit_code = exit_code
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ""
        super().__init__(
            f"Agent process for session {session_id} exited "
            f"with code {exit_code}{detail}"
        )


class UnsupportedOperationError(OrchestrationError):
    """Operation is not valid for this transport kind."""
    def __init__(self, kind: str, operation: str):
        self.kind = kind
        self.operation = operation
        super().__init__(
            f"Operation '{operation}' is not supported for {kind} sessions"
        )


class AlreadyResolvedError(OrchestrationError):
    """A decision was already applied to this approval request."""
    def __init__(self, request_id: str, decision: str):
        self.request_id = request_id
        self.decision = decision
        super().__init__(
            f"Approval request {request_id} already resolved as {decision}"
        )


class NotFoundError(OrchestrationError):
    """Unknown id, or an id that belongs to another workspace."""
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ApprovalTimeoutError(OrchestrationError):
    """Approval wait exceeded its bound and was auto-denied."""
    def __init__(self, request_id: str, timeout_seconds: float):
        self.request_id = request_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Approval request {request_id} timed out "
            f"after {timeout_seconds}s"
        )


class InvalidStateError(OrchestrationError, ValueError):
    """Operation conflicts with the session's current status."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Session {session_id}: {reason}")
