"""Orchestration facade: the one surface the UI layer talks to.

Every session-scoped call names both the workspace and the session; an
id that exists but belongs to another workspace is reported exactly like
an unknown id.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .approval import ApprovalGate
from .config import EngineConfig
from .errors import NotFoundError, UnsupportedOperationError
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    ConnectionState,
    Session,
    SessionConfig,
    SessionEvent,
    SessionKind,
    Workspace,
)
from .session_registry import LogSubscription, SessionRegistry
from .transports.base import RetryPolicy
from .transports.local import LocalProcessTransport
from .transports.registry import TransportRegistry
from .transports.remote import RemoteTransport
from .workspace import WorkspaceManager
from ..adapters.event_bus import EventBus, NotificationSubscription
from ..shared.services.debug_log import DebugEntry, DebugLog
from ..shared.services.persistence import WorkspaceStore
from ..shared.services.prompts import CustomPrompt, discover_prompts

logger = logging.getLogger(__name__)

_DECISION_ALIASES = {
    "approve": ApprovalDecision.APPROVED,
    "approved": ApprovalDecision.APPROVED,
    "allow": ApprovalDecision.APPROVED,
    "once": ApprovalDecision.APPROVED,
    "deny": ApprovalDecision.DENIED,
    "denied": ApprovalDecision.DENIED,
    "reject": ApprovalDecision.DENIED,
}


def parse_decision(value: str | ApprovalDecision) -> ApprovalDecision:
    if isinstance(value, ApprovalDecision):
        decision = value
    else:
        decision = _DECISION_ALIASES.get(str(value).strip().lower())
        if decision is None:
            raise ValueError(f"Unknown approval decision: {value!r}")
    if decision == ApprovalDecision.PENDING:
        raise ValueError("decision must be approved or denied")
    return decision


def parse_kind(value: str | SessionKind) -> SessionKind:
    try:
        return SessionKind(value)
    except ValueError:
        raise ValueError(
            f"Unknown session kind: {value!r} "
            f"(expected one of: {', '.join(k.value for k in SessionKind)})"
        ) from None


class OrchestrationFacade:
    """Workspace-scoped entry points over the session orchestration core."""

    def __init__(
        self,
        registry: SessionRegistry,
        workspaces: WorkspaceManager,
        transports: TransportRegistry,
        *,
        event_bus: EventBus,
        debug_log: DebugLog | None = None,
        prompts_dir: Path | None = None,
    ) -> None:
        self.registry = registry
        self.workspaces = workspaces
        self.transports = transports
        self.event_bus = event_bus
        self.debug_log = debug_log or DebugLog()
        self._prompts_dir = prompts_dir

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        store: WorkspaceStore | None = None,
        debug_log: DebugLog | None = None,
        prompts_dir: Path | None = None,
    ) -> OrchestrationFacade:
        """Wire the full stack from one EngineConfig."""
        debug_log = debug_log or DebugLog(config.debug_log_size)
        bus = EventBus(maxsize=config.notification_queue_size)
        retry = RetryPolicy(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        )
        remote = RemoteTransport(
            config.remote_url,
            poll_interval=config.poll_interval_seconds,
            retry=retry,
            request_timeout=config.remote_request_timeout_seconds,
        )
        local = LocalProcessTransport(
            config.local_command,
            defaults=config.local_agent,
            credential_env=config.credential_env,
            cancel_grace_seconds=config.cancel_grace_seconds,
            stderr_sink=debug_log.stderr_sink,
        )
        transports = TransportRegistry()
        transports.register(remote)
        transports.register(local)

        async def probe(workspace: Workspace) -> dict[str, Any]:
            return await remote.client_for(workspace).health()

        workspaces = WorkspaceManager(
            probe,
            event_bus=bus,
            store=store,
            health_failure_threshold=config.health_failure_threshold,
            health_check_interval=config.health_check_interval_seconds,
            connect_retry=retry,
        )
        registry = SessionRegistry(
            transports,
            workspaces,
            gate=ApprovalGate(),
            event_bus=bus,
            approval_timeout=config.approval_timeout_seconds,
            abort_confirm_timeout=config.abort_confirm_timeout_seconds,
        )
        return cls(
            registry,
            workspaces,
            transports,
            event_bus=bus,
            debug_log=debug_log,
            prompts_dir=prompts_dir,
        )

    # ── Scoping helpers ──

    def _session(self, workspace_id: str, session_id: str) -> Session:
        self.workspaces.get(workspace_id)
        session = self.registry.get(session_id)
        if session.workspace_id != workspace_id:
            raise NotFoundError("session", session_id)
        return session

    def _request(self, workspace_id: str, request_id: str) -> ApprovalRequest:
        request = self.registry.gate.get(request_id)
        if request.workspace_id != workspace_id:
            raise NotFoundError("approval request", request_id)
        return request

    def _remote(self) -> RemoteTransport:
        transport = self.transports.get_or_raise(SessionKind.REMOTE)
        assert isinstance(transport, RemoteTransport)
        return transport

    def _local(self) -> LocalProcessTransport:
        transport = self.transports.get_or_raise(SessionKind.LOCAL_PROCESS)
        assert isinstance(transport, LocalProcessTransport)
        return transport

    # ── Sessions ──

    def list_sessions(self, workspace_id: str) -> list[Session]:
        self.workspaces.get(workspace_id)
        return self.registry.list_sessions(workspace_id)

    def get_session(self, workspace_id: str, session_id: str) -> Session:
        return self._session(workspace_id, session_id)

    async def start_session(
        self,
        workspace_id: str,
        kind: str | SessionKind,
        config: SessionConfig | dict[str, Any] | None = None,
    ) -> Session:
        if not isinstance(config, SessionConfig):
            config = SessionConfig.from_dict(config)
        return await self.registry.create_session(workspace_id, parse_kind(kind), config)

    async def resume_session(
        self, workspace_id: str, kind: str | SessionKind, session_id: str,
    ) -> Session:
        return await self.registry.resume_session(
            workspace_id, parse_kind(kind), session_id,
        )

    async def list_remote_sessions(self, workspace_id: str) -> list[dict[str, Any]]:
        """Sessions the workspace's remote backend knows about."""
        workspace = self.workspaces.get(workspace_id)
        return await self._remote().client_for(workspace).list_sessions()

    async def send_message(self, workspace_id: str, session_id: str, text: str) -> None:
        self._session(workspace_id, session_id)
        await self.registry.send(session_id, text)

    def get_output(
        self, workspace_id: str, session_id: str, since_seq: int = 0,
    ) -> list[SessionEvent]:
        self._session(workspace_id, session_id)
        return self.registry.get_log(session_id, since_seq)

    def stream_output(
        self, workspace_id: str, session_id: str, since_seq: int = 0,
    ) -> LogSubscription:
        self._session(workspace_id, session_id)
        return self.registry.subscribe(session_id, since_seq)

    async def abort_session(self, workspace_id: str, session_id: str) -> Session:
        self._session(workspace_id, session_id)
        return await self.registry.abort(session_id)

    async def delete_session(self, workspace_id: str, session_id: str) -> None:
        self._session(workspace_id, session_id)
        await self.registry.delete(session_id)

    # ── Approvals ──

    def pending_approvals(self, workspace_id: str) -> list[ApprovalRequest]:
        self.workspaces.get(workspace_id)
        return self.registry.gate.pending(workspace_id)

    async def decide_approval(
        self,
        workspace_id: str,
        request_id: str,
        decision: str | ApprovalDecision,
        reason: str | None = None,
    ) -> ApprovalRequest:
        self._request(workspace_id, request_id)
        return await self.registry.decide_approval(
            request_id, parse_decision(decision), reason,
        )

    # ── Remote workspace content ──

    async def get_session_diffs(
        self, workspace_id: str, session_id: str,
    ) -> list[dict[str, Any]]:
        session = self._session(workspace_id, session_id)
        if session.kind != SessionKind.REMOTE:
            raise UnsupportedOperationError(session.kind.value, "diffs")
        workspace = self.workspaces.get(workspace_id)
        return await self._remote().client_for(workspace).get_diffs(session_id)

    async def search_files(self, workspace_id: str, pattern: str) -> list[str]:
        workspace = self.workspaces.get(workspace_id)
        return await self._remote().client_for(workspace).search_files(pattern)

    async def read_file(self, workspace_id: str, path: str) -> str:
        workspace = self.workspaces.get(workspace_id)
        return await self._remote().client_for(workspace).read_file(path)

    async def list_files(self, workspace_id: str, path: str = "") -> Any:
        """Directory listing from the backend, passed through as returned."""
        workspace = self.workspaces.get(workspace_id)
        return await self._remote().client_for(workspace).list_files(path)

    # ── Workspaces ──

    def add_workspace(
        self, path: str, name: str | None = None, remote_url: str | None = None,
    ) -> Workspace:
        return self.workspaces.add(path, name=name, remote_url=remote_url)

    def list_workspaces(self) -> list[Workspace]:
        return self.workspaces.list()

    async def connect_workspace(
        self, workspace_id: str, *, monitor: bool = True,
    ) -> ConnectionState:
        state = await self.workspaces.connect(workspace_id)
        if monitor:
            self.workspaces.start_health_monitor(workspace_id)
        return state

    async def remove_workspace(self, workspace_id: str) -> Workspace:
        """Abort and delete the workspace's sessions, then forget it."""
        self.workspaces.get(workspace_id)
        for session in self.registry.list_sessions(workspace_id):
            if not session.is_terminal:
                await self.registry.abort(session.session_id)
            await self.registry.delete(session.session_id)
        return await self.workspaces.remove(workspace_id)

    # ── Misc ──

    async def list_local_models(self) -> list[str]:
        return await self._local().list_models()

    def list_prompts(self) -> list[CustomPrompt]:
        return discover_prompts(self._prompts_dir)

    def subscribe_notifications(self) -> NotificationSubscription:
        return self.event_bus.subscribe()

    def debug_entries(self) -> list[DebugEntry]:
        return self.debug_log.entries()

    def reset_debug(self) -> None:
        self.debug_log.reset()

    def status(self) -> dict[str, Any]:
        return {
            "transports": self.transports.availability_report(),
            "workspaces": len(self.workspaces.list()),
            "sessions": len(self.registry.list_sessions()),
            "pending_approvals": len(self.registry.gate.pending()),
        }

    async def shutdown(self) -> None:
        logger.info("Shutting down orchestration core")
        await self.registry.shutdown()
        await self.workspaces.shutdown()
        await self.transports.shutdown_all()
        self.event_bus.close()
