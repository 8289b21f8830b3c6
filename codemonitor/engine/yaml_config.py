"""YAML configuration loader.

Loads a single YAML file layered over the environment-derived
EngineConfig. When no YAML is provided, env vars work exactly as before.

Example YAML:
    engine:
      remote_url: http://localhost:4096
      poll_interval_seconds: 0.5
      approval_timeout_seconds: 120

    local_agent:
      command: pi
      credential_env: GITHUB_TOKEN
      model: gpt-5.2-codex
      thinking: xhigh
      provider: github-copilot
      system_prompt: |
        ...

    workspaces:
      backend:
        path: ~/src/backend
      docs:
        path: ~/src/docs
        remote_url: http://localhost:4097
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

# Keys in `local_agent:` that live on EngineConfig rather than LocalAgentConfig.
_LOCAL_ENGINE_KEYS = {
    "command": "local_command",
    "credential_env": "credential_env",
    "cancel_grace_seconds": "cancel_grace_seconds",
}


@dataclass
class WorkspaceEntry:
    """A workspace declared in YAML."""
    name: str
    path: str
    remote_url: str | None = None


@dataclass
class MonitorConfig:
    """Fully resolved config from a YAML file."""
    engine: EngineConfig
    workspaces: list[WorkspaceEntry] = field(default_factory=list)


def _coerce(current: Any, value: Any, key: str) -> Any:
    """Coerce a YAML scalar to the type of the existing default."""
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.lower() in {"1", "true", "yes"}
        return bool(value)
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str) or current is None:
        return str(value) if value is not None else None
    raise ValueError(f"Unsupported config override for {key!r}")


def _apply_overrides(target: object, section: dict[str, Any], label: str) -> None:
    known = {f.name for f in fields(target)}  # type: ignore[arg-type]
    for key, value in section.items():
        if key not in known:
            logger.warning("Ignoring unknown %s option: %s", label, key)
            continue
        setattr(target, key, _coerce(getattr(target, key), value, key))


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> MonitorConfig:
    """Load and parse a YAML config file over ``base`` (or env defaults)."""
    path = Path(path).expanduser()
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw.keys())) or "(empty)",
    )

    engine = base or EngineConfig.from_env()

    engine_section = raw.get("engine") or {}
    if engine_section:
        _apply_overrides(engine, engine_section, "engine")

    local_section = dict(raw.get("local_agent") or {})
    for yaml_key, attr in _LOCAL_ENGINE_KEYS.items():
        if yaml_key in local_section:
            value = local_section.pop(yaml_key)
            setattr(engine, attr, _coerce(getattr(engine, attr), value, yaml_key))
    if local_section:
        _apply_overrides(engine.local_agent, local_section, "local_agent")

    workspaces: list[WorkspaceEntry] = []
    for name, entry in (raw.get("workspaces") or {}).items():
        if isinstance(entry, str):
            entry = {"path": entry}
        if not isinstance(entry, dict) or not entry.get("path"):
            logger.warning("Workspace %r has no path; skipping", name)
            continue
        ws_path = Path(str(entry["path"])).expanduser()
        if not ws_path.is_absolute():
            ws_path = (path.parent / ws_path).resolve()
        workspaces.append(WorkspaceEntry(
            name=str(name),
            path=str(ws_path),
            remote_url=entry.get("remote_url"),
        ))

    logger.info(
        "load_yaml_config: remote=%s local_command=%s workspaces=%d",
        engine.remote_url, engine.local_command, len(workspaces),
    )
    return MonitorConfig(engine=engine, workspaces=workspaces)
