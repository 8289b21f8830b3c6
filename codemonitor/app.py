"""codemonitor main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .engine.config import EngineConfig
from .engine.facade import OrchestrationFacade
from .engine.yaml_config import load_yaml_config
from .shared.services.debug_log import DebugLog, DebugLogHandler
from .shared.services.persistence import WorkspaceStore

LOG_DIR = Path.home() / ".codemonitor" / "logs"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(
    level: str,
    debug_log: DebugLog | None = None,
    log_dir: Path | None = None,
) -> Path:
    """Root logger: rotating file + stderr, plus the in-process debug buffer."""
    log_dir = log_dir or LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "codemonitor.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    if debug_log is not None:
        root.addHandler(DebugLogHandler(debug_log))
    # aiohttp's own access log duplicates the request middleware.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codemonitor",
        description="codemonitor: orchestrate coding-agent sessions across workspaces",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Interface to bind (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file with engine, local_agent and workspaces sections",
    )
    parser.add_argument(
        "--remote-url", metavar="URL",
        help="Remote agent service URL (overrides config/env)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Log at DEBUG level",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    engine = EngineConfig.from_env()
    debug_log = DebugLog(engine.debug_log_size)
    log_file = configure_logging(
        "DEBUG" if args.verbose else engine.log_level, debug_log,
    )
    logger = logging.getLogger(__name__)

    workspace_entries = []
    if args.config:
        loaded = load_yaml_config(args.config, base=engine)
        engine = loaded.engine
        workspace_entries = loaded.workspaces
    if args.remote_url:
        engine.remote_url = args.remote_url

    logger.info(
        "Starting codemonitor host=%s port=%s config=%s remote=%s log=%s",
        args.host, args.port, args.config or "<none>", engine.remote_url, log_file,
    )

    from .server import MonitorServer

    facade = OrchestrationFacade.from_config(
        engine, store=WorkspaceStore(), debug_log=debug_log,
    )
    facade.workspaces.load()
    for entry in workspace_entries:
        facade.add_workspace(entry.path, name=entry.name, remote_url=entry.remote_url)

    server = MonitorServer(facade, host=args.host, port=args.port)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
