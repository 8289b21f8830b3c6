"""Approval gate: human sign-off on gated agent actions.

Each request is a tiny state machine, ``pending -> approved | denied``,
resolved exactly once. Resolution and release are separate steps: the
session registry first records the decision (status, transcript) and
only then releases the waiting session pump, so the pump always resumes
against a consistent session.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from .errors import (
    AlreadyResolvedError,
    ApprovalTimeoutError,
    InvalidStateError,
    NotFoundError,
)
from .models import ApprovalDecision, ApprovalRequest

logger = logging.getLogger(__name__)


class ApprovalGate:
    """Tracks approval requests and suspends sessions until decided."""

    def __init__(self) -> None:
        self._requests: dict[str, ApprovalRequest] = {}
        self._pending_by_session: dict[str, str] = {}
        self._futures: dict[str, asyncio.Future[ApprovalDecision]] = {}

    def open(
        self,
        session_id: str,
        workspace_id: str,
        action: dict[str, Any],
        action_id: str | None = None,
    ) -> ApprovalRequest:
        """Open a request. A session may have at most one pending."""
        existing = self._pending_by_session.get(session_id)
        if existing is not None:
            raise InvalidStateError(
                session_id,
                f"approval request {existing[:8]} is still pending",
            )
        request = ApprovalRequest(
            session_id=session_id,
            workspace_id=workspace_id,
            action=dict(action),
            action_id=action_id,
        )
        self._requests[request.request_id] = request
        self._pending_by_session[session_id] = request.request_id
        self._futures[request.request_id] = asyncio.get_running_loop().create_future()
        logger.info(
            "Approval request opened session=%s request_id=%s action=%s",
            session_id[:8], request.request_id[:8], action.get("type"),
        )
        return request

    def get(self, request_id: str) -> ApprovalRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise NotFoundError("approval request", request_id)
        return request

    def pending_for(self, session_id: str) -> ApprovalRequest | None:
        request_id = self._pending_by_session.get(session_id)
        return self._requests.get(request_id) if request_id else None

    def pending(self, workspace_id: str | None = None) -> list[ApprovalRequest]:
        return [
            self._requests[rid]
            for rid in self._pending_by_session.values()
            if workspace_id is None or self._requests[rid].workspace_id == workspace_id
        ]

    def resolve(
        self,
        request_id: str,
        decision: ApprovalDecision,
        reason: str | None = None,
    ) -> ApprovalRequest:
        """Apply the single decision. Does not wake the waiting session."""
        if decision == ApprovalDecision.PENDING:
            raise ValueError("decision must be approved or denied")
        request = self.get(request_id)
        if not request.is_pending:
            raise AlreadyResolvedError(request_id, request.decision.value)
        request.decision = decision
        request.reason = reason
        request.resolved_at = datetime.now(timezone.utc)
        self._pending_by_session.pop(request.session_id, None)
        logger.info(
            "Approval request resolved request_id=%s decision=%s reason=%s",
            request_id[:8], decision.value, reason or "-",
        )
        return request

    def release(self, request_id: str) -> None:
        """Wake the session waiting on a resolved request."""
        request = self.get(request_id)
        future = self._futures.get(request_id)
        if future is not None and not future.done():
            future.set_result(request.decision)

    async def wait(
        self, request_id: str, timeout: float | None = None,
    ) -> ApprovalDecision:
        """Block until released. Raises ApprovalTimeoutError past ``timeout``."""
        future = self._futures.get(request_id)
        if future is None:
            raise NotFoundError("approval request", request_id)
        if timeout is not None and timeout <= 0:
            timeout = None
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            raise ApprovalTimeoutError(request_id, timeout or 0.0) from None

    def cancel_session(
        self, session_id: str, reason: str = "cancelled",
    ) -> ApprovalRequest | None:
        """Abandon the session's pending action immediately, if any."""
        request = self.pending_for(session_id)
        if request is None:
            return None
        self.resolve(request.request_id, ApprovalDecision.DENIED, reason)
        self.release(request.request_id)
        return request

    def forget_session(self, session_id: str) -> None:
        """Drop every request belonging to a deleted session."""
        self.cancel_session(session_id)
        for request_id in [
            rid for rid, r in self._requests.items() if r.session_id == session_id
        ]:
            self._requests.pop(request_id, None)
            future = self._futures.pop(request_id, None)
            if future is not None and not future.done():
                future.cancel()
