from __future__ import annotations

import logging

import pytest

from codemonitor.app import build_parser, configure_logging
from codemonitor.shared.services.debug_log import DebugLog, DebugLogHandler


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.host == "127.0.0.1"
    assert args.port == 0
    assert args.config is None
    assert args.remote_url is None
    assert not args.verbose


def test_parser_options():
    args = build_parser().parse_args([
        "--port", "8765", "--config", "cm.yaml", "--remote-url", "http://h:1", "-v",
    ])
    assert args.port == 8765
    assert args.config == "cm.yaml"
    assert args.remote_url == "http://h:1"
    assert args.verbose


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_configure_logging(tmp_path, restore_root_logging):
    debug = DebugLog()
    log_file = configure_logging("debug", debug, log_dir=tmp_path / "logs")
    root = restore_root_logging

    assert log_file == tmp_path / "logs" / "codemonitor.log"
    assert root.level == logging.DEBUG
    assert any(isinstance(h, DebugLogHandler) for h in root.handlers)

    logging.getLogger("codemonitor.test.app").warning("disk nearly full")
    for handler in root.handlers:
        handler.flush()
    assert "WARNING codemonitor.test.app" in log_file.read_text()
    assert debug.entries()[-1].payload == "disk nearly full"
