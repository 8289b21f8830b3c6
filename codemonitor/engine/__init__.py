"""Session orchestration core: workspaces, sessions, approvals, transports."""
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    ConnectionState,
    EventRole,
    PayloadKind,
    Session,
    SessionConfig,
    SessionEvent,
    SessionKind,
    SessionStatus,
    TransportEvent,
    Workspace,
)
from .config import EngineConfig
from .errors import (
    AlreadyResolvedError,
    ApprovalTimeoutError,
    BackendError,
    InvalidStateError,
    NotFoundError,
    OrchestrationError,
    ProcessExitedError,
    TransportUnavailableError,
    UnsupportedOperationError,
)
from .approval import ApprovalGate
from .session_registry import LogSubscription, SessionRegistry
from .workspace import WorkspaceManager
from .facade import OrchestrationFacade

__all__ = [
    # Models
    "ApprovalDecision",
    "ApprovalRequest",
    "ConnectionState",
    "EventRole",
    "PayloadKind",
    "Session",
    "SessionConfig",
    "SessionEvent",
    "SessionKind",
    "SessionStatus",
    "TransportEvent",
    "Workspace",
    # Config
    "EngineConfig",
    # Errors
    "AlreadyResolvedError",
    "ApprovalTimeoutError",
    "BackendError",
    "InvalidStateError",
    "NotFoundError",
    "OrchestrationError",
    "ProcessExitedError",
    "TransportUnavailableError",
    "UnsupportedOperationError",
    # Core
    "ApprovalGate",
    "LogSubscription",
    "OrchestrationFacade",
    "SessionRegistry",
    "WorkspaceManager",
]
