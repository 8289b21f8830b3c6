"""Workspace persistence: the registered workspaces survive restarts.

Stored as JSON in ~/.codemonitor/workspaces.json. Only identity and
last-used metadata are persisted; connection state and session ids are
runtime-only and rebuilt on connect.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from ...engine.models import Workspace

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACES_PATH = Path.home() / ".codemonitor" / "workspaces.json"

_PERSISTED_FIELDS = (
    "workspace_id",
    "path",
    "name",
    "remote_url",
    "last_model",
    "last_thinking",
    "last_session_id",
)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write via temp file + rename so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class WorkspaceStore:
    """Load/save the workspace list."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or DEFAULT_WORKSPACES_PATH

    def load(self) -> list[Workspace]:
        """Read persisted workspaces; a missing or corrupt file yields none."""
        if not self.path.exists():
            logger.debug("No workspace file at %s", self.path)
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable workspace file %s: %s", self.path, exc)
            return []

        workspaces: list[Workspace] = []
        for item in raw.get("workspaces", []) if isinstance(raw, dict) else []:
            if not isinstance(item, dict) or not item.get("path"):
                continue
            workspaces.append(Workspace(**{
                k: item[k] for k in _PERSISTED_FIELDS if item.get(k) is not None
            }))
        return workspaces

    def save(self, workspaces: Iterable[Workspace]) -> None:
        payload: dict[str, Any] = {
            "version": 1,
            "workspaces": [
                {k: getattr(ws, k) for k in _PERSISTED_FIELDS}
                for ws in workspaces
            ],
        }
        try:
            atomic_write_text(self.path, json.dumps(payload, indent=2) + "\n")
        except OSError as exc:
            logger.warning("Failed to save workspaces to %s: %s", self.path, exc)
            return
        logger.debug("Saved %d workspace(s) to %s", len(payload["workspaces"]), self.path)
