"""Session registry: the single owner of session state and transcripts.

Every status change and every log append happens here, under the
session's own lock, so two concurrent operations on one session never
interleave while operations on different sessions proceed in parallel.

Each live session has one pump task that pulls from its transport's
stream and appends to the log. Before every forward step the pump checks
the approval gate; while a request is pending the pump waits on the
gate and the transport is not advanced.
"""
from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .approval import ApprovalGate
from .errors import (
    AlreadyResolvedError,
    ApprovalTimeoutError,
    InvalidStateError,
    NotFoundError,
    OrchestrationError,
    ProcessExitedError,
    TransportUnavailableError,
)
from .lifecycle import is_deletable, validate_transition
from .models import (
    ApprovalDecision,
    ApprovalRequest,
    EventRole,
    PayloadKind,
    Session,
    SessionConfig,
    SessionEvent,
    SessionKind,
    SessionStatus,
    TransportEvent,
)
from ..adapters.events import (
    ApprovalRequested,
    ApprovalResolved,
    Notification,
    SessionCreated,
    SessionDeleted,
    SessionEventAppended,
    SessionStatusChanged,
)

if TYPE_CHECKING:
    from ..adapters.event_bus import EventBus
    from .transports.base import Transport
    from .transports.registry import TransportRegistry
    from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class _SessionEntry:
    session: Session
    transport: Transport
    log: list[SessionEvent] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    changed: asyncio.Condition = field(default_factory=asyncio.Condition)
    pump: asyncio.Task | None = None
    deleted: bool = False


class LogSubscription:
    """Cursor over one session's log.

    Yields every event with ``seq > since_seq`` in order, then follows
    new appends. Output is never dropped: a slow reader only delays its
    own cursor. Iteration ends once the session is terminal and fully
    drained, when the session is deleted, or after ``close()``.
    """

    def __init__(self, entry: _SessionEntry, since_seq: int = 0) -> None:
        self._entry = entry
        self._cursor = max(0, since_seq)
        self._closed = False

    @property
    def last_seq(self) -> int:
        return self._cursor

    def __aiter__(self) -> AsyncIterator[SessionEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[SessionEvent]:
        entry = self._entry
        while True:
            async with entry.changed:
                await entry.changed.wait_for(
                    lambda: self._closed
                    or entry.deleted
                    or len(entry.log) > self._cursor
                    or entry.session.is_terminal
                )
                batch = entry.log[self._cursor:]
                finished = (
                    self._closed or entry.deleted or entry.session.is_terminal
                )
            for event in batch:
                if self._closed:
                    return
                self._cursor = event.seq
                yield event
            if finished and not batch:
                return

    async def close(self) -> None:
        self._closed = True
        async with self._entry.changed:
            self._entry.changed.notify_all()


class SessionRegistry:
    """Creates, drives and tears down sessions across all workspaces."""

    def __init__(
        self,
        transports: TransportRegistry,
        workspaces: WorkspaceManager,
        *,
        gate: ApprovalGate | None = None,
        event_bus: EventBus | None = None,
        approval_timeout: float = 300.0,
        abort_confirm_timeout: float = 10.0,
    ) -> None:
        self._transports = transports
        self._workspaces = workspaces
        self._gate = gate or ApprovalGate()
        self._bus = event_bus
        self._approval_timeout = approval_timeout
        self._abort_confirm_timeout = abort_confirm_timeout
        self._entries: dict[str, _SessionEntry] = {}

    @property
    def gate(self) -> ApprovalGate:
        return self._gate

    # ── Lookup ──

    def _require(self, session_id: str) -> _SessionEntry:
        entry = self._entries.get(session_id)
        if entry is None:
            raise NotFoundError("session", session_id)
        return entry

    def get(self, session_id: str) -> Session:
        """Copy of the session record; callers never mutate the original."""
        return copy.copy(self._require(session_id).session)

    def list_sessions(self, workspace_id: str | None = None) -> list[Session]:
        return [
            copy.copy(entry.session)
            for entry in self._entries.values()
            if workspace_id is None or entry.session.workspace_id == workspace_id
        ]

    def get_log(self, session_id: str, since_seq: int = 0) -> list[SessionEvent]:
        """Events with ``seq > since_seq``, oldest first."""
        entry = self._require(session_id)
        return list(entry.log[max(0, since_seq):])

    def subscribe(self, session_id: str, since_seq: int = 0) -> LogSubscription:
        return LogSubscription(self._require(session_id), since_seq)

    # ── Creation ──

    async def create_session(
        self,
        workspace_id: str,
        kind: SessionKind,
        config: SessionConfig | None = None,
    ) -> Session:
        """Allocate a backend session, register it and start its pump."""
        config = config or SessionConfig()
        transport = self._transports.get_or_raise(kind)
        async with self._workspaces.lock(workspace_id):
            workspace = self._workspaces.get(workspace_id)
            try:
                session_id = await transport.create(workspace, config)
            except TransportUnavailableError as exc:
                self._workspaces.mark_disconnected(workspace_id, exc.reason)
                raise
            entry = self._register(session_id, workspace_id, kind, config, transport)
            workspace.session_ids.add(session_id)

        self._workspaces.remember_session(
            workspace_id,
            session_id=session_id,
            model=config.model,
            thinking=config.thinking,
        )
        if config.prompt and not transport.echoes_input:
            await self._append(entry, TransportEvent(
                role=EventRole.USER, kind=PayloadKind.TEXT, text=config.prompt,
            ))
        await self._start(entry)
        return copy.copy(entry.session)

    async def resume_session(
        self,
        workspace_id: str,
        kind: SessionKind,
        session_id: str,
    ) -> Session:
        """Attach to a session the backend already knows about."""
        existing = self._entries.get(session_id)
        if existing is not None:
            if existing.session.workspace_id != workspace_id:
                raise NotFoundError("session", session_id)
            return copy.copy(existing.session)

        transport = self._transports.get_or_raise(kind)
        async with self._workspaces.lock(workspace_id):
            workspace = self._workspaces.get(workspace_id)
            try:
                await transport.attach(workspace, session_id)
            except TransportUnavailableError as exc:
                self._workspaces.mark_disconnected(workspace_id, exc.reason)
                raise
            entry = self._register(
                session_id, workspace_id, kind, SessionConfig(), transport,
            )
            workspace.session_ids.add(session_id)
        logger.info("Session resumed id=%s workspace=%s", session_id[:8], workspace_id[:8])
        await self._start(entry)
        return copy.copy(entry.session)

    def _register(
        self,
        session_id: str,
        workspace_id: str,
        kind: SessionKind,
        config: SessionConfig,
        transport: Transport,
    ) -> _SessionEntry:
        session = Session(
            session_id=session_id,
            workspace_id=workspace_id,
            kind=kind,
            config=config,
        )
        entry = _SessionEntry(session=session, transport=transport)
        self._entries[session_id] = entry
        logger.info(
            "Session created id=%s kind=%s workspace=%s",
            session_id[:8], kind.value, workspace_id[:8],
        )
        self._publish(SessionCreated(
            workspace_id=workspace_id,
            session_id=session_id,
            kind=kind.value,
            status=session.status.value,
        ))
        return entry

    async def _start(self, entry: _SessionEntry) -> None:
        session_id = entry.session.session_id
        try:
            await entry.transport.start(session_id)
        except TransportUnavailableError as exc:
            self._workspaces.mark_disconnected(entry.session.workspace_id, exc.reason)
            await self._fail(entry, f"Failed to start: {exc}")
            return
        except OrchestrationError as exc:
            await self._fail(entry, f"Failed to start: {exc}")
            return
        async with entry.lock:
            self._transition(entry, SessionStatus.RUNNING)
        await self._notify(entry)
        entry.pump = asyncio.create_task(
            self._pump(entry), name=f"session-pump-{session_id[:8]}",
        )

    # ── Log ──

    async def append_event(self, session_id: str, event: TransportEvent) -> SessionEvent:
        """Append one event with the next sequence number.

        An event that requires approval opens a gate request and moves the
        session to awaiting-approval in the same step.
        """
        return await self._append(self._require(session_id), event)

    async def _append(self, entry: _SessionEntry, event: TransportEvent) -> SessionEvent:
        async with entry.lock:
            record = self._append_locked(entry, event)
        await self._notify(entry)
        return record

    def _append_locked(self, entry: _SessionEntry, event: TransportEvent) -> SessionEvent:
        session = entry.session
        if session.is_terminal:
            raise InvalidStateError(
                session.session_id,
                f"cannot append to a {session.status.value} session",
            )
        data = dict(event.data)
        request: ApprovalRequest | None = None
        if event.requires_approval:
            if session.status != SessionStatus.RUNNING:
                raise InvalidStateError(
                    session.session_id,
                    f"approval requested while {session.status.value}",
                )
            action = data.get("action") or {"type": "action", "title": event.text}
            request = self._gate.open(
                session.session_id, session.workspace_id, action, event.action_id,
            )
            data["request_id"] = request.request_id

        record = SessionEvent(
            session_id=session.session_id,
            seq=len(entry.log) + 1,
            role=event.role,
            kind=event.kind,
            text=event.text,
            data=data,
        )
        entry.log.append(record)
        session.updated_at = record.timestamp
        self._publish(SessionEventAppended(
            workspace_id=session.workspace_id,
            session_id=session.session_id,
            seq=record.seq,
            role=record.role.value,
            kind=record.kind.value,
            text=record.text,
        ))
        if request is not None:
            self._transition(entry, SessionStatus.AWAITING_APPROVAL)
            self._publish(ApprovalRequested(
                workspace_id=session.workspace_id,
                session_id=session.session_id,
                request_id=request.request_id,
                action=dict(request.action),
            ))
        return record

    def _system_event(
        self, entry: _SessionEntry, kind: PayloadKind, text: str,
        data: dict[str, Any] | None = None,
    ) -> SessionEvent:
        return self._append_locked(entry, TransportEvent(
            role=EventRole.SYSTEM, kind=kind, text=text, data=data or {},
        ))

    def _transition(
        self, entry: _SessionEntry, target: SessionStatus, reason: str | None = None,
    ) -> None:
        session = entry.session
        validate_transition(session.status, target, session.session_id)
        old = session.status
        session.status = target
        session.updated_at = datetime.now(timezone.utc)
        logger.info(
            "Session %s: %s -> %s%s",
            session.session_id[:8], old.value, target.value,
            f" ({reason})" if reason else "",
        )
        self._publish(SessionStatusChanged(
            workspace_id=session.workspace_id,
            session_id=session.session_id,
            old_status=old.value,
            new_status=target.value,
            reason=reason,
        ))

    async def _notify(self, entry: _SessionEntry) -> None:
        async with entry.changed:
            entry.changed.notify_all()

    def _publish(self, event: Notification) -> None:
        if self._bus is not None:
            self._bus.publish(event)

    # ── Pump ──

    async def _pump(self, entry: _SessionEntry) -> None:
        session = entry.session
        session_id = session.session_id
        try:
            async for item in entry.transport.stream(session_id):
                pending = self._gate.pending_for(session_id)
                if pending is not None:
                    await self._await_decision(entry, pending)
                if session.abort_requested or session.is_terminal:
                    return
                record = await self._append(entry, item)
                if item.requires_approval:
                    await self._await_decision(
                        entry, self._gate.get(record.data["request_id"]),
                    )
        except asyncio.CancelledError:
            raise
        except ProcessExitedError as exc:
            session.exit_code = exc.exit_code
            await self._fail(
                entry,
                f"Agent process exited with code {exc.exit_code}",
                stderr=exc.stderr,
            )
            return
        except TransportUnavailableError as exc:
            self._workspaces.mark_disconnected(session.workspace_id, exc.reason)
            await self._fail(entry, f"Backend unreachable: {exc.reason}")
            return
        except InvalidStateError as exc:
            if session.abort_requested or session.is_terminal:
                return
            await self._fail(entry, str(exc))
            return
        except OrchestrationError as exc:
            await self._fail(entry, str(exc))
            return
        except Exception as exc:
            logger.exception("Session pump %s crashed", session_id[:8])
            await self._fail(entry, f"Internal error: {exc}")
            return

        if session.abort_requested or session.is_terminal:
            return
        if entry.transport.completes_on_stream_end:
            await self._complete(entry)

    async def _await_decision(
        self, entry: _SessionEntry, request: ApprovalRequest,
    ) -> None:
        """Block the pump until the request is decided, auto-denying on timeout."""
        session_id = entry.session.session_id
        try:
            decision = await self._gate.wait(
                request.request_id, timeout=self._approval_timeout,
            )
        except ApprovalTimeoutError:
            logger.warning(
                "Approval %s for session %s timed out after %.0fs; denying",
                request.request_id[:8], session_id[:8], self._approval_timeout,
            )
            try:
                await self.decide_approval(
                    request.request_id, ApprovalDecision.DENIED, reason="timeout",
                )
            except AlreadyResolvedError:
                logger.debug(
                    "Approval %s decided just before its timeout",
                    request.request_id[:8],
                )
            decision = await self._gate.wait(request.request_id)

        if entry.session.abort_requested or entry.session.is_terminal:
            return
        await entry.transport.resolve_action(
            session_id, request.action_id, decision == ApprovalDecision.APPROVED,
        )

    async def _complete(self, entry: _SessionEntry) -> None:
        session = entry.session
        async with entry.lock:
            if session.is_terminal:
                return
            session.exit_code = entry.transport.exit_code(session.session_id)
            self._transition(entry, SessionStatus.COMPLETED)
        await self._notify(entry)

    async def _fail(self, entry: _SessionEntry, reason: str, stderr: str = "") -> None:
        session = entry.session
        async with entry.lock:
            if session.is_terminal:
                return
            cancelled = self._gate.cancel_session(session.session_id, "session failed")
            if cancelled is not None:
                self._record_decision(entry, cancelled)
            data: dict[str, Any] = {}
            if session.exit_code is not None:
                data["exit_code"] = session.exit_code
            if stderr:
                data["stderr"] = stderr
            self._system_event(entry, PayloadKind.DIAGNOSTIC, reason, data)
            session.error = reason
            self._transition(entry, SessionStatus.FAILED, reason)
        logger.warning("Session %s failed: %s", session.session_id[:8], reason)
        await self._notify(entry)

    # ── Operations ──

    async def send(self, session_id: str, text: str) -> None:
        """Deliver a user message once no approval is pending."""
        entry = self._require(session_id)
        session = entry.session
        if session.is_terminal:
            raise InvalidStateError(
                session_id, f"cannot send to a {session.status.value} session",
            )
        pending = self._gate.pending_for(session_id)
        if pending is not None:
            try:
                await self._gate.wait(pending.request_id, timeout=self._approval_timeout)
            except ApprovalTimeoutError as exc:
                raise InvalidStateError(
                    session_id, "approval still pending; message not sent",
                ) from exc

        try:
            async with entry.lock:
                if session.is_terminal:
                    raise InvalidStateError(
                        session_id, f"cannot send to a {session.status.value} session",
                    )
                if session.abort_requested:
                    raise InvalidStateError(session_id, "session is being aborted")
                await entry.transport.send(session_id, text)
        except TransportUnavailableError as exc:
            self._workspaces.mark_disconnected(session.workspace_id, exc.reason)
            await self._fail(entry, f"Backend unreachable: {exc.reason}")
            raise
        logger.info("Message sent to session %s (%d chars)", session_id[:8], len(text))

    async def decide_approval(
        self,
        request_id: str,
        decision: ApprovalDecision,
        reason: str | None = None,
    ) -> ApprovalRequest:
        """Apply the one decision a request accepts, then resume the session."""
        request = self._gate.get(request_id)
        entry = self._require(request.session_id)
        async with entry.lock:
            self._gate.resolve(request_id, decision, reason)
            self._record_decision(entry, request)
            if entry.session.status == SessionStatus.AWAITING_APPROVAL:
                self._transition(
                    entry, SessionStatus.RUNNING, f"approval {decision.value}",
                )
        self._gate.release(request_id)
        await self._notify(entry)
        return request

    def _record_decision(self, entry: _SessionEntry, request: ApprovalRequest) -> None:
        title = request.action.get("title") or request.action.get("type") or "action"
        verb = "Approved" if request.decision == ApprovalDecision.APPROVED else "Denied"
        text = f"{verb}: {title}"
        if request.reason:
            text += f" ({request.reason})"
        self._system_event(entry, PayloadKind.APPROVAL_DECISION, text, {
            "request_id": request.request_id,
            "decision": request.decision.value,
            "reason": request.reason,
        })
        self._publish(ApprovalResolved(
            workspace_id=request.workspace_id,
            session_id=request.session_id,
            request_id=request.request_id,
            decision=request.decision.value,
            reason=request.reason,
        ))

    async def abort(self, session_id: str) -> Session:
        """Cancel a session. Idempotent on terminal sessions."""
        entry = self._require(session_id)
        session = entry.session
        if session.is_terminal:
            return copy.copy(session)
        session.abort_requested = True

        async with entry.lock:
            cancelled = self._gate.cancel_session(session_id, "session aborted")
            if cancelled is not None:
                self._record_decision(entry, cancelled)
            if session.status == SessionStatus.AWAITING_APPROVAL:
                self._transition(
                    entry, SessionStatus.RUNNING, "approval denied (session aborted)",
                )
        await self._notify(entry)

        confirmed = False
        if session.status != SessionStatus.CREATED:
            try:
                confirmed = await asyncio.wait_for(
                    entry.transport.cancel(session_id),
                    timeout=self._abort_confirm_timeout,
                )
            except asyncio.TimeoutError:
                confirmed = False
            except OrchestrationError as exc:
                logger.warning("Cancel of session %s failed: %s", session_id[:8], exc)
        if not confirmed and session.status != SessionStatus.CREATED:
            logger.warning(
                "Termination of session %s not confirmed within %.1fs; "
                "marking aborted",
                session_id[:8], self._abort_confirm_timeout,
            )
        await self._stop_pump(entry)

        async with entry.lock:
            if not session.is_terminal:
                text = "Session aborted"
                if not confirmed and session.status != SessionStatus.CREATED:
                    text += " (termination not confirmed by backend)"
                self._system_event(entry, PayloadKind.DIAGNOSTIC, text, {
                    "confirmed": confirmed,
                })
                exit_code = entry.transport.exit_code(session_id)
                if exit_code is not None:
                    session.exit_code = exit_code
                self._transition(entry, SessionStatus.ABORTED, "aborted by user")
        await self._notify(entry)
        return copy.copy(session)

    async def delete(self, session_id: str) -> None:
        """Remove a terminal (or never-started) session and its log."""
        entry = self._require(session_id)
        session = entry.session
        if not is_deletable(session.status):
            raise InvalidStateError(
                session_id,
                f"cannot delete a {session.status.value} session; abort it first",
            )
        await self._stop_pump(entry)
        workspace_id = session.workspace_id
        async with self._workspaces.lock(workspace_id):
            try:
                await entry.transport.delete(session_id)
            finally:
                await entry.transport.dispose(session_id)
                self._entries.pop(session_id, None)
                self._gate.forget_session(session_id)
                try:
                    self._workspaces.get(workspace_id).session_ids.discard(session_id)
                except NotFoundError:
                    pass
        async with entry.changed:
            entry.deleted = True
            entry.changed.notify_all()
        logger.info("Session deleted id=%s", session_id[:8])
        self._publish(SessionDeleted(workspace_id=workspace_id, session_id=session_id))

    async def _stop_pump(self, entry: _SessionEntry) -> None:
        pump = entry.pump
        if pump is None or pump.done() or pump is asyncio.current_task():
            return
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop every pump. Remote sessions keep running on their backend."""
        for entry in list(self._entries.values()):
            await self._stop_pump(entry)
        logger.info("Session registry stopped (%d sessions)", len(self._entries))
