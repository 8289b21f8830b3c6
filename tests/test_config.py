from __future__ import annotations

import os
from unittest.mock import patch

import pytest
import yaml

from codemonitor.engine.config import EngineConfig
from codemonitor.engine.models import DEFAULT_LOCAL_MODEL, SessionConfig
from codemonitor.engine.yaml_config import load_yaml_config


class TestEngineConfigFromEnv:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = EngineConfig.from_env()
        assert config.remote_url == "http://localhost:4096"
        assert config.health_failure_threshold == 3
        assert config.local_command == "pi"
        assert config.local_agent.model == DEFAULT_LOCAL_MODEL

    def test_overrides(self):
        env = {
            "CODEMONITOR_REMOTE_URL": "http://10.0.0.5:4096",
            "CODEMONITOR_POLL_INTERVAL": "0.25",
            "CODEMONITOR_HEALTH_FAILURE_THRESHOLD": "5",
            "CODEMONITOR_APPROVAL_TIMEOUT": "0",
            "CODEMONITOR_LOCAL_MODEL": "claude-sonnet-4",
            "CODEMONITOR_LOCAL_COMMAND": "/opt/pi/bin/pi",
        }
        with patch.dict(os.environ, env, clear=True):
            config = EngineConfig.from_env()
        assert config.remote_url == "http://10.0.0.5:4096"
        assert config.poll_interval_seconds == 0.25
        assert config.health_failure_threshold == 5
        assert config.approval_timeout_seconds == 0.0
        assert config.local_agent.model == "claude-sonnet-4"
        assert config.local_command == "/opt/pi/bin/pi"


class TestSessionConfig:
    def test_from_dict(self):
        config = SessionConfig.from_dict({
            "prompt": "go",
            "effort": "low",
            "extra_args": ["--x", 3],
            "env": {"N": 1},
            "bogus": True,
        })
        assert config.thinking == "low"
        assert config.extra_args == ["--x", "3"]
        assert config.env == {"N": "1"}

    def test_thinking_wins_over_effort(self):
        assert SessionConfig.from_dict({"thinking": "high", "effort": "low"}).thinking == "high"

    def test_empty(self):
        assert SessionConfig.from_dict(None) == SessionConfig()


class TestYamlConfig:
    def test_full_file(self, tmp_path):
        (tmp_path / "docs").mkdir()
        path = tmp_path / "codemonitor.yaml"
        path.write_text(
            "engine:\n"
            "  remote_url: http://localhost:5000\n"
            "  poll_interval_seconds: 2\n"
            "  retry_max_attempts: '4'\n"
            "local_agent:\n"
            "  command: /usr/local/bin/pi\n"
            "  cancel_grace_seconds: 1\n"
            "  model: gpt-5\n"
            "  thinking: low\n"
            "workspaces:\n"
            "  docs: docs\n"
            "  api:\n"
            "    path: /srv/api\n"
            "    remote_url: http://localhost:4097\n"
            "  broken: {}\n",
        )
        loaded = load_yaml_config(path, base=EngineConfig())

        assert loaded.engine.remote_url == "http://localhost:5000"
        assert loaded.engine.poll_interval_seconds == 2.0
        assert loaded.engine.retry_max_attempts == 4
        assert loaded.engine.local_command == "/usr/local/bin/pi"
        assert loaded.engine.cancel_grace_seconds == 1.0
        assert loaded.engine.local_agent.model == "gpt-5"
        assert loaded.engine.local_agent.thinking == "low"
        assert [(w.name, w.path, w.remote_url) for w in loaded.workspaces] == [
            ("docs", str((tmp_path / "docs").resolve()), None),
            ("api", "/srv/api", "http://localhost:4097"),
        ]

    def test_unknown_keys_are_ignored(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("engine:\n  no_such_option: 1\n")
        assert load_yaml_config(path, base=EngineConfig()).engine == EngineConfig()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("")
        assert load_yaml_config(path, base=EngineConfig()).workspaces == []

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("engine: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_yaml_config(path, base=EngineConfig())

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "c.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError):
            load_yaml_config(path, base=EngineConfig())
