"""Local CLI agent transport.

One OS process per session. The process model is single-shot: the task
prompt is passed on the command line at launch and the process runs to
completion, so mid-session input is rejected with UnsupportedOperation.

Stdout is captured line by line into a per-session history buffer, so a
stream can be reopened at any time and will replay the history before
following the live tail.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from ..errors import (
    InvalidStateError,
    NotFoundError,
    ProcessExitedError,
    TransportUnavailableError,
    UnsupportedOperationError,
)
from ..models import (
    EventRole,
    LocalAgentConfig,
    PayloadKind,
    SessionConfig,
    SessionKind,
    TransportEvent,
    Workspace,
)
from .base import Transport

logger = logging.getLogger(__name__)

# Called with (session_id, line) for every stderr line.
StderrSink = Callable[[str, str], None]

_STDERR_TAIL_LINES = 50


@dataclass
class LaunchSpec:
    """Everything needed to spawn the agent; built at create time."""
    argv: list[str]
    cwd: str
    env: dict[str, str]


@dataclass
class _LocalSessionState:
    spec: LaunchSpec
    process: asyncio.subprocess.Process | None = None
    lines: list[str] = field(default_factory=list)
    stdout_closed: bool = False
    stderr_tail: deque[str] = field(
        default_factory=lambda: deque(maxlen=_STDERR_TAIL_LINES)
    )
    changed: asyncio.Condition = field(default_factory=asyncio.Condition)
    cancel_requested: bool = False
    readers: list[asyncio.Task] = field(default_factory=list)


async def read_line_unbounded(stream: asyncio.StreamReader) -> bytes:
    """Read one line from *stream* with no size limit.

    ``StreamReader.readline()`` gives up past the reader limit (64 KiB by
    default), and one transcript record such as a large tool result can
    exceed it. Overlong chunks are drained and accumulated until the
    newline or EOF arrives. Returns ``b""`` at EOF.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            return b"".join(chunks)
        except asyncio.LimitOverrunError as exc:
            chunks.append(await stream.read(exc.consumed))
        except asyncio.IncompleteReadError as exc:
            # EOF before a newline: return whatever is left.
            chunks.append(exc.partial)
            return b"".join(chunks)


def parse_output_line(line: str) -> TransportEvent | None:
    """Translate one stdout line into a TransportEvent (None for blanks).

    Plain text is agent output. A JSON object with a ``type`` key is a
    structured transcript record: ``tool_call``, ``diff``,
    ``approval_request`` (or ``permission``), ``text``/``message``.
    """
    stripped = line.rstrip("\r\n")
    if not stripped.strip():
        return None
    if stripped.lstrip().startswith("{"):
        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            record = None
        if isinstance(record, dict) and isinstance(record.get("type"), str):
            return _record_to_event(record, stripped)
    return TransportEvent(role=EventRole.AGENT, kind=PayloadKind.TEXT, text=stripped)


def _record_to_event(record: dict, raw: str) -> TransportEvent:
    record_type = record["type"].lower()
    text = record.get("text") or record.get("content") or record.get("title") or ""
    if not isinstance(text, str):
        text = json.dumps(text)
    if record_type in {"approval_request", "approval", "permission"}:
        action = {
            "type": record.get("action") or record.get("tool") or "action",
            "title": record.get("title") or text,
        }
        if record.get("input") is not None:
            action["input"] = record["input"]
        return TransportEvent(
            role=EventRole.AGENT,
            kind=PayloadKind.APPROVAL_REQUEST,
            text=text or str(action["title"]),
            data={"action": action},
            requires_approval=True,
            action_id=str(record["id"]) if record.get("id") else None,
        )
    if record_type in {"tool_call", "tool"}:
        return TransportEvent(
            role=EventRole.AGENT,
            kind=PayloadKind.TOOL_CALL,
            text=text,
            data={"tool": record.get("tool") or record.get("name"),
                  "input": record.get("input")},
        )
    if record_type in {"diff", "patch"}:
        return TransportEvent(
            role=EventRole.AGENT,
            kind=PayloadKind.DIFF,
            text=text,
            data={"path": record.get("path")},
        )
    if record_type in {"text", "message"}:
        return TransportEvent(role=EventRole.AGENT, kind=PayloadKind.TEXT, text=text)
    return TransportEvent(role=EventRole.AGENT, kind=PayloadKind.TEXT, text=raw)


class LocalProcessTransport(Transport):
    """Transport that spawns the CLI agent once per session."""

    def __init__(
        self,
        command: str = "pi",
        *,
        defaults: LocalAgentConfig | None = None,
        credential_env: str = "GITHUB_TOKEN",
        cancel_grace_seconds: float = 5.0,
        stderr_sink: StderrSink | None = None,
    ) -> None:
        self._command = self.resolve_command(command, "pi")
        self._defaults = defaults or LocalAgentConfig()
        self._credential_env = credential_env
        self._cancel_grace = cancel_grace_seconds
        self._stderr_sink = stderr_sink
        self._sessions: dict[str, _LocalSessionState] = {}

    @property
    def kind(self) -> SessionKind:
        return SessionKind.LOCAL_PROCESS

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None

    def _require(self, session_id: str) -> _LocalSessionState:
        state = self._sessions.get(session_id)
        if state is None:
            raise NotFoundError("local session", session_id)
        return state

    def build_launch_spec(self, workspace: Workspace, config: SessionConfig) -> LaunchSpec:
        """Resolve per-session overrides against the configured defaults."""
        argv = [
            self._command,
            "--provider", config.provider or self._defaults.provider,
            "--model", config.model or self._defaults.model,
            "--thinking", config.thinking or self._defaults.thinking,
        ]
        system_prompt = config.system_prompt or self._defaults.system_prompt
        if system_prompt:
            argv.extend(["--system-prompt", system_prompt])
        argv.extend(config.extra_args)
        if config.prompt:
            argv.extend(["-p", config.prompt])

        env = os.environ.copy()
        env.update(config.env)
        if not env.get(self._credential_env):
            logger.debug(
                "No %s in environment; agent will rely on its own auth",
                self._credential_env,
            )
        return LaunchSpec(argv=argv, cwd=workspace.path, env=env)

    async def create(self, workspace: Workspace, config: SessionConfig) -> str:
        session_id = str(uuid.uuid4())
        self._sessions[session_id] = _LocalSessionState(
            spec=self.build_launch_spec(workspace, config),
        )
        logger.info(
            "Local session prepared id=%s cwd=%s model=%s",
            session_id[:8], workspace.path, config.model or self._defaults.model,
        )
        return session_id

    def launch_spec(self, session_id: str) -> LaunchSpec:
        return self._require(session_id).spec

    async def start(self, session_id: str) -> None:
        state = self._require(session_id)
        if state.process is not None:
            return
        spec = state.spec
        try:
            # create_subprocess_exec passes args as an argv list, no shell
            state.process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                env=spec.env,
            )
        except FileNotFoundError as exc:
            raise TransportUnavailableError(
                spec.argv[0], f"CLI not found ({exc})",
            ) from exc
        except OSError as exc:
            raise TransportUnavailableError(spec.argv[0], str(exc)) from exc

        logger.info(
            "Local agent started id=%s pid=%d", session_id[:8], state.process.pid,
        )
        state.readers = [
            asyncio.create_task(self._read_stdout(state)),
            asyncio.create_task(self._read_stderr(session_id, state)),
        ]

    async def _read_stdout(self, state: _LocalSessionState) -> None:
        assert state.process is not None and state.process.stdout is not None
        reader = state.process.stdout
        try:
            while True:
                line = await read_line_unbounded(reader)
                if not line:
                    break
                async with state.changed:
                    state.lines.append(line.decode("utf-8", errors="replace"))
                    state.changed.notify_all()
        finally:
            async with state.changed:
                state.stdout_closed = True
                state.changed.notify_all()

    async def _read_stderr(self, session_id: str, state: _LocalSessionState) -> None:
        assert state.process is not None and state.process.stderr is not None
        reader = state.process.stderr
        while True:
            line = await read_line_unbounded(reader)
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            state.stderr_tail.append(text)
            if self._stderr_sink is not None:
                self._stderr_sink(session_id, text)

    async def send(self, session_id: str, text: str) -> None:
        self._require(session_id)
        raise UnsupportedOperationError(self.kind.value, "send")

    async def stream(self, session_id: str) -> AsyncIterator[TransportEvent]:
        state = self._require(session_id)
        if state.process is None:
            raise InvalidStateError(session_id, "agent process not started")

        index = 0
        while True:
            async with state.changed:
                await state.changed.wait_for(
                    lambda: index < len(state.lines) or state.stdout_closed
                )
                pending = state.lines[index:]
                index = len(state.lines)
                closed = state.stdout_closed
            for line in pending:
                event = parse_output_line(line)
                if event is not None:
                    yield event
            if closed:
                break

        returncode = await state.process.wait()
        # Let stderr drain so the tail is complete for diagnostics.
        await asyncio.gather(*state.readers, return_exceptions=True)
        if returncode != 0 and not state.cancel_requested:
            raise ProcessExitedError(
                session_id, returncode, "\n".join(state.stderr_tail),
            )
        logger.info(
            "Local agent exited id=%s code=%s cancelled=%s",
            session_id[:8], returncode, state.cancel_requested,
        )

    def exit_code(self, session_id: str) -> int | None:
        state = self._sessions.get(session_id)
        if state is None or state.process is None:
            return None
        return state.process.returncode

    async def cancel(self, session_id: str) -> bool:
        state = self._require(session_id)
        state.cancel_requested = True
        proc = state.process
        if proc is None or proc.returncode is not None:
            return True
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._cancel_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "Local agent %s ignored SIGTERM for %.1fs, killing",
                    session_id[:8], self._cancel_grace,
                )
                proc.kill()
                await proc.wait()
        except ProcessLookupError:
            pass
        logger.info("Local agent stopped id=%s pid=%d", session_id[:8], proc.pid)
        return True

    async def dispose(self, session_id: str) -> None:
        state = self._sessions.get(session_id)
        if state is None:
            return
        if state.process is not None and state.process.returncode is None:
            await self.cancel(session_id)
        for task in state.readers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*state.readers, return_exceptions=True)
        self._sessions.pop(session_id, None)

    async def shutdown(self) -> None:
        for session_id in list(self._sessions):
            await self.dispose(session_id)

    async def list_models(self) -> list[str]:
        """Models the CLI reports via ``--list-models``."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command, "--list-models",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise TransportUnavailableError(
                self._command, f"CLI not found ({exc})",
            ) from exc
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise TransportUnavailableError(
                self._command,
                f"--list-models exited {proc.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}",
            )
        return [
            line.strip()
            for line in stdout.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
