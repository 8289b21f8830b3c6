"""Abstract base for session transports.

Each transport wraps one agent backend (the remote HTTP agent service,
the locally spawned CLI agent). The session registry drives every
session through the same create/start/send/stream/cancel/dispose
contract and never branches on the backend kind itself.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable, TypeVar

from ..errors import TransportUnavailableError, UnsupportedOperationError

if TYPE_CHECKING:
    from ..models import SessionConfig, SessionKind, TransportEvent, Workspace

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient transport failures."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        label: str,
    ) -> T:
        """Run ``operation``, retrying TransportUnavailableError.

        Re-raises the last error once ``max_attempts`` is exhausted.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except TransportUnavailableError as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "%s failed after %d attempts: %s", label, attempt, exc,
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                    label, attempt, self.max_attempts, delay, exc.reason,
                )
                await asyncio.sleep(delay)


class Transport(abc.ABC):
    """Uniform session contract over one backend's native mechanism."""

    # True when user input comes back through stream(); the registry then
    # leaves logging it to the stream.
    echoes_input: bool = False
    # True when a normal end of stream() means the agent finished its work.
    completes_on_stream_end: bool = True

    @property
    @abc.abstractmethod
    def kind(self) -> SessionKind:
        """Which SessionKind this transport serves."""

    @abc.abstractmethod
    async def create(self, workspace: Workspace, config: SessionConfig) -> str:
        """Allocate a backend session and return its identifier."""

    @abc.abstractmethod
    async def start(self, session_id: str) -> None:
        """Make the session live (spawn the process, if any)."""

    @abc.abstractmethod
    async def send(self, session_id: str, text: str) -> None:
        """Deliver a user message to a live session."""

    @abc.abstractmethod
    def stream(self, session_id: str) -> AsyncIterator[TransportEvent]:
        """Yield output as it becomes available.

        Ends when the session finishes or is cancelled. Failures that
        survive the retry policy are raised from the iterator.
        """

    @abc.abstractmethod
    async def cancel(self, session_id: str) -> bool:
        """Request termination. Returns True once termination is confirmed."""

    @abc.abstractmethod
    async def dispose(self, session_id: str) -> None:
        """Release connections/process handles held for the session."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this transport's backend can be used at all."""

    async def attach(self, workspace: Workspace, session_id: str) -> None:
        """Resume an existing backend session. Default: unsupported."""
        raise UnsupportedOperationError(self.kind.value, "resume")

    async def resolve_action(
        self, session_id: str, action_id: str | None, approved: bool,
    ) -> None:
        """Tell the backend whether a gated action may proceed.

        Default no-op: the transport has nothing to notify and simply
        resumes once the registry moves past the gated event.
        """
        return None

    async def delete(self, session_id: str) -> None:
        """Remove the session on the backend side. Default no-op."""
        return None

    def exit_code(self, session_id: str) -> int | None:
        """Process exit code, for transports that run one. Default None."""
        return None

    async def shutdown(self) -> None:
        """Clean up transport-wide resources. Default no-op."""
        return None

    @staticmethod
    def resolve_command(command: str, fallback: str | None = None) -> str:
        """Resolve a CLI binary, preferring the configured command.

        Keeps the raw value when neither is on PATH so error messages
        show what was configured.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug("Command %s not found; falling back to %s", command, fallback)
            return fallback
        return command or fallback or ""
