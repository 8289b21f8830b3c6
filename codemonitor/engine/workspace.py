"""Workspace registry: directory-scoped contexts and their connection state.

Connection state is tracked per workspace. A failing health check in one
workspace never changes another workspace's state, and sessions are not
touched here at all; the session registry decides what a lost backend
means for its own sessions.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .errors import (
    BackendError,
    NotFoundError,
    TransportUnavailableError,
)
from .models import ConnectionState, Workspace
from .transports.base import RetryPolicy
from ..adapters.events import WorkspaceConnectionChanged

if TYPE_CHECKING:
    from ..adapters.event_bus import EventBus
    from ..shared.services.persistence import WorkspaceStore

logger = logging.getLogger(__name__)

# async def probe(workspace) -> {"healthy": bool, "version": str}
HealthProbe = Callable[[Workspace], Awaitable[dict[str, Any]]]

_PROBE_ERRORS = (TransportUnavailableError, BackendError, NotFoundError)


class WorkspaceManager:
    """Owns Workspace entities and serializes per-workspace mutations."""

    def __init__(
        self,
        health_probe: HealthProbe | None = None,
        *,
        event_bus: EventBus | None = None,
        store: WorkspaceStore | None = None,
        health_failure_threshold: int = 3,
        health_check_interval: float = 10.0,
        connect_retry: RetryPolicy | None = None,
    ) -> None:
        self._probe = health_probe
        self._bus = event_bus
        self._store = store
        self._threshold = max(1, health_failure_threshold)
        self._interval = health_check_interval
        self._connect_retry = connect_retry or RetryPolicy()
        self._workspaces: dict[str, Workspace] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._monitors: dict[str, asyncio.Task] = {}

    # ── Registration ──

    def load(self) -> list[Workspace]:
        """Restore persisted workspaces (connection state starts disconnected)."""
        if self._store is None:
            return []
        restored = []
        for workspace in self._store.load():
            self._workspaces[workspace.workspace_id] = workspace
            restored.append(workspace)
        if restored:
            logger.info("Restored %d workspace(s) from %s", len(restored), self._store.path)
        return restored

    def add(
        self,
        path: str,
        name: str | None = None,
        remote_url: str | None = None,
    ) -> Workspace:
        """Register a workspace. Re-adding the same path returns the existing one."""
        resolved = str(Path(path).expanduser().resolve())
        for existing in self._workspaces.values():
            if existing.path == resolved:
                return existing
        workspace = Workspace(
            path=resolved,
            name=name or Path(resolved).name,
            remote_url=remote_url,
        )
        self._workspaces[workspace.workspace_id] = workspace
        logger.info("Workspace added id=%s path=%s", workspace.workspace_id[:8], resolved)
        self._persist()
        return workspace

    def get(self, workspace_id: str) -> Workspace:
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            raise NotFoundError("workspace", workspace_id)
        return workspace

    def list(self) -> list[Workspace]:
        return list(self._workspaces.values())

    def lock(self, workspace_id: str) -> asyncio.Lock:
        """Serialization token for connect/disconnect and session create/delete."""
        lock = self._locks.get(workspace_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workspace_id] = lock
        return lock

    async def remove(self, workspace_id: str) -> Workspace:
        """Forget a workspace. Callers tear its sessions down first."""
        workspace = self.get(workspace_id)
        await self.stop_health_monitor(workspace_id)
        async with self.lock(workspace_id):
            self._workspaces.pop(workspace_id, None)
        self._locks.pop(workspace_id, None)
        logger.info("Workspace removed id=%s", workspace_id[:8])
        self._persist()
        return workspace

    def remember_session(
        self,
        workspace_id: str,
        *,
        session_id: str,
        model: str | None = None,
        thinking: str | None = None,
    ) -> None:
        """Record last-used model/session metadata for the workspace."""
        workspace = self.get(workspace_id)
        workspace.last_session_id = session_id
        if model:
            workspace.last_model = model
        if thinking:
            workspace.last_thinking = thinking
        self._persist()

    def _persist(self) -> None:
        if self._store is not None:
            self._store.save(self._workspaces.values())

    # ── Connection state ──

    def _set_connection(
        self, workspace: Workspace, state: ConnectionState, reason: str = "",
    ) -> None:
        old = workspace.connection
        if old == state:
            return
        workspace.connection = state
        log = logger.warning if state == ConnectionState.DISCONNECTED else logger.info
        log(
            "Workspace %s connection: %s -> %s%s",
            workspace.workspace_id[:8], old.value, state.value,
            f" ({reason})" if reason else "",
        )
        if self._bus is not None:
            self._bus.publish(WorkspaceConnectionChanged(
                workspace_id=workspace.workspace_id,
                old_state=old.value,
                new_state=state.value,
            ))

    async def _check(self, workspace: Workspace) -> None:
        """One health check. Raises on failure."""
        if self._probe is None:
            return
        result = await self._probe(workspace)
        if not result.get("healthy", True):
            raise BackendError(
                workspace.remote_url or "remote", 200, "backend reports unhealthy",
            )

    async def connect(self, workspace_id: str) -> ConnectionState:
        """connecting -> health check with bounded retries -> connected/disconnected."""
        workspace = self.get(workspace_id)
        async with self.lock(workspace_id):
            self._set_connection(workspace, ConnectionState.CONNECTING)

            async def attempt() -> None:
                try:
                    await self._check(workspace)
                except (BackendError, NotFoundError) as exc:
                    raise TransportUnavailableError(
                        workspace.remote_url or "remote", str(exc),
                    ) from exc

            try:
                await self._connect_retry.run(
                    attempt, label=f"connect workspace {workspace_id[:8]}",
                )
            except TransportUnavailableError as exc:
                workspace.consecutive_health_failures = self._threshold
                self._set_connection(workspace, ConnectionState.DISCONNECTED, exc.reason)
                return workspace.connection
            workspace.consecutive_health_failures = 0
            self._set_connection(workspace, ConnectionState.CONNECTED)
            return workspace.connection

    async def disconnect(self, workspace_id: str) -> None:
        workspace = self.get(workspace_id)
        await self.stop_health_monitor(workspace_id)
        async with self.lock(workspace_id):
            self._set_connection(workspace, ConnectionState.DISCONNECTED, "requested")

    async def probe(self, workspace_id: str) -> bool:
        """Single health check; repeated failures degrade the workspace."""
        workspace = self.get(workspace_id)
        try:
            await self._check(workspace)
        except _PROBE_ERRORS as exc:
            logger.info(
                "Health check failed for workspace %s (%d/%d): %s",
                workspace_id[:8], workspace.consecutive_health_failures + 1,
                self._threshold, exc,
            )
            self._record_failure(workspace)
            return False
        except Exception:
            logger.exception(
                "Health probe for workspace %s raised unexpectedly", workspace_id[:8],
            )
            self._record_failure(workspace)
            return False
        workspace.consecutive_health_failures = 0
        self._set_connection(workspace, ConnectionState.CONNECTED)
        return True

    def _record_failure(self, workspace: Workspace) -> None:
        workspace.consecutive_health_failures += 1
        if workspace.consecutive_health_failures >= self._threshold:
            self._set_connection(
                workspace, ConnectionState.DISCONNECTED,
                f"{workspace.consecutive_health_failures} failed health checks",
            )

    def mark_disconnected(self, workspace_id: str, reason: str) -> None:
        """Degrade after a session exhausted its transport retries."""
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            return
        workspace.consecutive_health_failures = max(
            workspace.consecutive_health_failures, self._threshold,
        )
        self._set_connection(workspace, ConnectionState.DISCONNECTED, reason)

    # ── Health monitor ──

    def start_health_monitor(self, workspace_id: str) -> None:
        self.get(workspace_id)
        task = self._monitors.get(workspace_id)
        if task is not None and not task.done():
            return
        self._monitors[workspace_id] = asyncio.create_task(
            self.run_health_monitor(workspace_id), name=f"health-{workspace_id[:8]}",
        )

    async def stop_health_monitor(self, workspace_id: str) -> None:
        task = self._monitors.pop(workspace_id, None)
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def run_health_monitor(self, workspace_id: str) -> None:
        """Probe every interval until the workspace is removed."""
        while workspace_id in self._workspaces:
            await self.probe(workspace_id)
            await asyncio.sleep(self._interval)

    async def shutdown(self) -> None:
        for workspace_id in list(self._monitors):
            await self.stop_health_monitor(workspace_id)
