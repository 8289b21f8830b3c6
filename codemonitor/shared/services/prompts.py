"""Custom prompt discovery.

Prompts are Markdown files in ``$CODEX_HOME/prompts`` (default
``~/.codex/prompts``). A file may open with a ``---`` frontmatter block
carrying ``description`` and ``argument-hint``; the rest is the body.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class CustomPrompt:
    name: str
    path: str
    content: str
    description: str | None = None
    argument_hint: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "description": self.description,
            "argumentHint": self.argument_hint,
            "content": self.content,
        }


def resolve_codex_home() -> Path | None:
    """$CODEX_HOME if set (None when it points nowhere), else ~/.codex."""
    value = os.environ.get("CODEX_HOME", "").strip()
    if value:
        path = Path(value).expanduser()
        return path.resolve() if path.exists() else None
    return Path.home() / ".codex"


def default_prompts_dir() -> Path | None:
    home = resolve_codex_home()
    return home / "prompts" if home is not None else None


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_frontmatter(content: str) -> tuple[str | None, str | None, str]:
    """Return (description, argument_hint, body).

    An unterminated frontmatter block is treated as plain body text.
    """
    lines = content.splitlines(keepends=True)
    if not lines or lines[0].strip() != "---":
        return None, None, content

    description: str | None = None
    argument_hint: str | None = None
    consumed = len(lines[0])
    for line in lines[1:]:
        consumed += len(line)
        stripped = line.strip()
        if stripped == "---":
            return description, argument_hint, content[consumed:]
        if not stripped or stripped.startswith("#") or ":" not in stripped:
            continue
        key, value = stripped.split(":", 1)
        key = key.strip().lower()
        if key == "description":
            description = _unquote(value.strip())
        elif key in ("argument-hint", "argument_hint"):
            argument_hint = _unquote(value.strip())
    return None, None, content


def discover_prompts(directory: Path | None = None) -> list[CustomPrompt]:
    """All ``*.md`` prompts in the directory, sorted by name."""
    directory = directory if directory is not None else default_prompts_dir()
    if directory is None or not directory.is_dir():
        return []

    prompts: list[CustomPrompt] = []
    for path in directory.iterdir():
        if not path.is_file() or path.suffix.lower() != ".md":
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Skipping unreadable prompt %s: %s", path, exc)
            continue
        description, argument_hint, body = parse_frontmatter(text)
        prompts.append(CustomPrompt(
            name=path.stem,
            path=str(path),
            content=body,
            description=description,
            argument_hint=argument_hint,
        ))
    prompts.sort(key=lambda p: p.name)
    return prompts
