"""Process-wide debug buffer of warnings, errors and agent stderr.

A bounded ring buffer: the newest ``maxlen`` entries are kept, older ones
fall off. The UI reads it on demand and clears it with ``reset()``.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any

DEFAULT_DEBUG_LOG_SIZE = 200


@dataclass
class DebugEntry:
    source: str  # "error", "stderr", "server", "client", ...
    label: str
    payload: Any = None
    timestamp: float = field(default_factory=time.time)
    entry_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "timestamp": self.timestamp,
            "source": self.source,
            "label": self.label,
            "payload": self.payload,
        }


def should_log(entry: DebugEntry) -> bool:
    """Only errors, stderr, and anything mentioning a warning are kept."""
    if entry.source in ("error", "stderr"):
        return True
    if "warn" in entry.label.lower():
        return True
    if isinstance(entry.payload, str):
        return "warn" in entry.payload.lower()
    return False


class DebugLog:
    def __init__(self, maxlen: int = DEFAULT_DEBUG_LOG_SIZE) -> None:
        self._entries: deque[DebugEntry] = deque(maxlen=max(1, maxlen))

    @property
    def maxlen(self) -> int:
        return self._entries.maxlen or 0

    def add(self, entry: DebugEntry) -> bool:
        """Record the entry if it passes the filter. Returns whether it was kept."""
        if not should_log(entry):
            return False
        self._entries.append(entry)
        return True

    def record(self, source: str, label: str, payload: Any = None) -> bool:
        return self.add(DebugEntry(source=source, label=label, payload=payload))

    def stderr_sink(self, session_id: str, line: str) -> None:
        """Sink for local agent stderr lines."""
        self.record("stderr", f"agent {session_id[:8]} stderr", line)

    def entries(self) -> list[DebugEntry]:
        return list(self._entries)

    @property
    def has_alerts(self) -> bool:
        return bool(self._entries)

    def reset(self) -> None:
        self._entries.clear()

    def export_text(self) -> str:
        """Plain-text dump for copying into a bug report."""
        blocks = []
        for entry in self._entries:
            stamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
            if entry.payload is None:
                payload = ""
            elif isinstance(entry.payload, str):
                payload = entry.payload
            else:
                payload = json.dumps(entry.payload, indent=2, default=str)
            blocks.append("\n".join(
                part for part in (entry.source.upper(), stamp, entry.label, payload)
                if part
            ))
        return "\n\n".join(blocks)


class DebugLogHandler(logging.Handler):
    """Feeds WARNING and above from the logging tree into a DebugLog."""

    def __init__(self, debug_log: DebugLog, level: int = logging.WARNING) -> None:
        super().__init__(level=level)
        self.debug_log = debug_log

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            source = "error" if record.levelno >= logging.ERROR else "server"
            label = f"{record.levelname.lower()} {record.name}"
            self.debug_log.record(source, label, message)
        except Exception:
            self.handleError(record)
