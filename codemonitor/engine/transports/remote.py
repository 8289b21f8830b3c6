"""Remote agent service transport.

One long-lived HTTP server hosts many independent sessions. Output is
obtained by polling each session's message list on a fixed interval and
forwarding only the parts not seen before, in server order.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from ..errors import (
    BackendError,
    NotFoundError,
    OrchestrationError,
    TransportUnavailableError,
)
from ..models import (
    EventRole,
    PayloadKind,
    SessionConfig,
    SessionKind,
    TransportEvent,
    Workspace,
)
from .base import RetryPolicy, Transport
from .remote_client import RemoteClient

logger = logging.getLogger(__name__)

_ROLE_MAP = {
    "assistant": EventRole.AGENT,
    "agent": EventRole.AGENT,
    "user": EventRole.USER,
}
_TOOL_KINDS = {"tool", "tool-call", "tool_call", "tool-invocation"}
_DIFF_KINDS = {"patch", "diff", "file-diff"}
_APPROVAL_KINDS = {"permission", "approval", "approval-request"}


@dataclass
class _RemoteSessionState:
    client: RemoteClient
    workspace_id: str
    model: str | None = None
    # message id -> number of parts already forwarded
    seen_parts: dict[str, int] = field(default_factory=dict)
    # Set on attach: the first poll returns history the backend has already
    # settled, so its permission parts are not gated again.
    replaying: bool = False
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)


def _normalize_message(raw: dict[str, Any]) -> tuple[str, str, list[dict[str, Any]]]:
    """Return (message_id, role, parts) for either message envelope shape."""
    info = raw.get("info") if isinstance(raw.get("info"), dict) else raw
    message_id = str(info.get("id") or raw.get("id") or "")
    role = str(info.get("role") or raw.get("role") or "assistant")
    parts = [p for p in (raw.get("parts") or []) if isinstance(p, dict)]
    if not parts:
        content = info.get("content") or raw.get("content")
        if content:
            parts = [{"kind": "text", "content": str(content)}]
    return message_id, role, parts


def part_to_event(role: str, part: dict[str, Any]) -> TransportEvent:
    """Translate one message part into a TransportEvent."""
    event_role = _ROLE_MAP.get(role.lower(), EventRole.SYSTEM)
    kind = str(part.get("kind") or part.get("type") or "text").lower()
    text = part.get("content") or part.get("text") or ""
    if not isinstance(text, str):
        text = str(text)
    source = part.get("source")

    if kind in _APPROVAL_KINDS or part.get("requires_approval"):
        action = {
            "type": part.get("action") or part.get("tool") or kind,
            "title": part.get("title") or text,
            "source": source,
        }
        if part.get("input") is not None:
            action["input"] = part.get("input")
        return TransportEvent(
            role=event_role,
            kind=PayloadKind.APPROVAL_REQUEST,
            text=text or str(action["title"] or ""),
            data={"action": action},
            requires_approval=True,
            action_id=str(part.get("permission_id") or part.get("id") or "") or None,
        )
    if kind in _TOOL_KINDS:
        return TransportEvent(
            role=event_role,
            kind=PayloadKind.TOOL_CALL,
            text=text,
            data={
                "tool": part.get("tool") or part.get("name"),
                "input": part.get("input"),
                "source": source,
            },
        )
    if kind in _DIFF_KINDS:
        return TransportEvent(
            role=event_role,
            kind=PayloadKind.DIFF,
            text=text,
            data={"path": part.get("path") or source},
        )
    return TransportEvent(
        role=event_role,
        kind=PayloadKind.TEXT,
        text=text,
        data={"source": source} if source else {},
    )


class RemoteTransport(Transport):
    """Transport for sessions hosted by the remote agent service."""

    echoes_input = True
    # The backend session outlives a stopped poll loop.
    completes_on_stream_end = False

    def __init__(
        self,
        default_url: str = "http://localhost:4096",
        *,
        poll_interval: float = 1.0,
        retry: RetryPolicy | None = None,
        request_timeout: float = 30.0,
    ) -> None:
        self._default_url = default_url.rstrip("/")
        self._poll_interval = poll_interval
        self._retry = retry or RetryPolicy()
        self._request_timeout = request_timeout
        self._clients: dict[str, RemoteClient] = {}
        self._sessions: dict[str, _RemoteSessionState] = {}

    @property
    def kind(self) -> SessionKind:
        return SessionKind.REMOTE

    def is_available(self) -> bool:
        return True

    def client_for(self, workspace: Workspace) -> RemoteClient:
        """Shared client for the workspace's backend URL."""
        url = (workspace.remote_url or self._default_url).rstrip("/")
        client = self._clients.get(url)
        if client is None:
            client = RemoteClient(url, timeout_seconds=self._request_timeout)
            self._clients[url] = client
        return client

    def _require(self, session_id: str) -> _RemoteSessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise NotFoundError("remote session", session_id)
        return state

    async def create(self, workspace: Workspace, config: SessionConfig) -> str:
        client = self.client_for(workspace)
        created = await self._retry.run(
            lambda: client.create_session(config.title),
            label="create remote session",
        )
        session_id = str(created["id"])
        self._sessions[session_id] = _RemoteSessionState(
            client=client,
            workspace_id=workspace.workspace_id,
            model=config.model,
        )
        if config.prompt:
            try:
                await self._retry.run(
                    lambda: client.send_message(session_id, config.prompt, config.model),
                    label=f"initial prompt {session_id[:8]}",
                )
            except OrchestrationError as exc:
                logger.warning(
                    "Initial prompt for %s failed, discarding session: %s",
                    session_id[:8], exc,
                )
                try:
                    await self.delete(session_id)
                finally:
                    await self.dispose(session_id)
                raise
        logger.info(
            "Remote session created id=%s workspace=%s url=%s",
            session_id[:8], workspace.workspace_id[:8], client.base_url,
        )
        return session_id

    async def attach(self, workspace: Workspace, session_id: str) -> None:
        client = self.client_for(workspace)
        sessions = await self._retry.run(
            client.list_sessions, label="list remote sessions",
        )
        if not any(str(s.get("id")) == session_id for s in sessions):
            raise NotFoundError("remote session", session_id)
        self._sessions[session_id] = _RemoteSessionState(
            client=client, workspace_id=workspace.workspace_id, replaying=True,
        )
        logger.info("Remote session attached id=%s", session_id[:8])

    async def start(self, session_id: str) -> None:
        # Remote sessions are live as soon as the server creates them.
        self._require(session_id)

    async def send(self, session_id: str, text: str) -> None:
        state = self._require(session_id)
        await self._retry.run(
            lambda: state.client.send_message(session_id, text, state.model),
            label=f"send to {session_id[:8]}",
        )

    async def stream(self, session_id: str) -> AsyncIterator[TransportEvent]:
        state = self._require(session_id)
        while not state.cancelled.is_set():
            messages = await self._retry.run(
                lambda: state.client.get_messages(session_id),
                label=f"poll {session_id[:8]}",
            )
            events = self._translate(state, messages, historical=state.replaying)
            state.replaying = False
            for event in events:
                yield event
            try:
                await asyncio.wait_for(
                    state.cancelled.wait(), timeout=self._poll_interval,
                )
            except asyncio.TimeoutError:
                pass
        logger.debug("Remote stream for %s ended (cancelled)", session_id[:8])

    @staticmethod
    def _translate(
        state: _RemoteSessionState,
        messages: list[dict[str, Any]],
        historical: bool = False,
    ) -> list[TransportEvent]:
        events: list[TransportEvent] = []
        for index, raw in enumerate(messages):
            if not isinstance(raw, dict):
                continue
            message_id, role, parts = _normalize_message(raw)
            key = message_id or f"#{index}"
            already = state.seen_parts.get(key, 0)
            for part in parts[already:]:
                event = part_to_event(role, part)
                if historical and event.requires_approval:
                    event = dataclasses.replace(
                        event,
                        requires_approval=False,
                        action_id=None,
                        data={**event.data, "historical": True},
                    )
                events.append(event)
            state.seen_parts[key] = max(already, len(parts))
        return events

    async def cancel(self, session_id: str) -> bool:
        state = self._require(session_id)
        state.cancelled.set()
        try:
            acknowledged = await state.client.abort_session(session_id)
        except (TransportUnavailableError, NotFoundError) as exc:
            # Cooperative: the poll loop has already stopped locally.
            logger.warning("Remote abort for %s not confirmed: %s", session_id[:8], exc)
            return False
        logger.info("Remote abort for %s acknowledged=%s", session_id[:8], acknowledged)
        return acknowledged

    async def resolve_action(
        self, session_id: str, action_id: str | None, approved: bool,
    ) -> None:
        if not action_id:
            return
        state = self._require(session_id)
        await self._retry.run(
            lambda: state.client.respond_permission(session_id, action_id, approved),
            label=f"permission reply {session_id[:8]}",
        )

    async def delete(self, session_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is None:
            return
        try:
            await state.client.delete_session(session_id)
        except (TransportUnavailableError, NotFoundError, BackendError) as exc:
            logger.warning("Remote delete for %s failed: %s", session_id[:8], exc)

    async def dispose(self, session_id: str) -> None:
        state = self._sessions.pop(session_id, None)
        if state is None:
            return
        state.cancelled.set()
        if not any(s.client is state.client for s in self._sessions.values()):
            await state.client.close()
            self._clients = {
                url: c for url, c in self._clients.items() if c is not state.client
            }

    async def shutdown(self) -> None:
        for state in self._sessions.values():
            state.cancelled.set()
        self._sessions.clear()
        for client in list(self._clients.values()):
            await client.close()
        self._clients.clear()
