"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CODEMONITOR_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from .models import (
    DEFAULT_LOCAL_MODEL,
    DEFAULT_LOCAL_PROVIDER,
    DEFAULT_LOCAL_THINKING,
    LocalAgentConfig,
)

logger = logging.getLogger(__name__)


@dataclass
class EngineConfig:
    """Session orchestration configuration."""

    # Remote agent service (one long-lived server, many sessions).
    remote_url: str = "http://localhost:4096"
    remote_request_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 1.0

    # Bounded retry for a failed poll/read/send before giving up.
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0

    # Consecutive failed health checks before a workspace is
    # marked disconnected.
    health_failure_threshold: int = 3
    health_check_interval_seconds: float = 10.0

    # Pending approvals older than this are auto-denied.
    # Set to 0 (or a negative value) to wait forever.
    approval_timeout_seconds: float = 300.0

    # Local agent termination: SIGTERM, then SIGKILL after the grace period.
    cancel_grace_seconds: float = 5.0
    # Max wait for a transport to confirm an abort before the session is
    # marked aborted anyway.
    abort_confirm_timeout_seconds: float = 10.0

    # Local CLI agent.
    local_command: str = "pi"
    credential_env: str = "GITHUB_TOKEN"
    local_agent: LocalAgentConfig = field(default_factory=LocalAgentConfig)

    # Notification fan-out queue size per subscriber (drop-oldest).
    notification_queue_size: int = 5000
    # Process-wide debug ring buffer size.
    debug_log_size: int = 200

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CODEMONITOR_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("CODEMONITOR_")
        }
        if overrides:
            logger.info(
                "EngineConfig.from_env: CODEMONITOR_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no CODEMONITOR_* env vars set, using defaults")

        config = cls(
            remote_url=os.getenv("CODEMONITOR_REMOTE_URL", cls.remote_url),
            remote_request_timeout_seconds=float(os.getenv(
                "CODEMONITOR_REQUEST_TIMEOUT",
                str(cls.remote_request_timeout_seconds),
            )),
            poll_interval_seconds=float(os.getenv(
                "CODEMONITOR_POLL_INTERVAL", str(cls.poll_interval_seconds)
            )),
            retry_max_attempts=int(os.getenv(
                "CODEMONITOR_RETRY_MAX_ATTEMPTS", str(cls.retry_max_attempts)
            )),
            retry_base_delay_seconds=float(os.getenv(
                "CODEMONITOR_RETRY_BASE_DELAY", str(cls.retry_base_delay_seconds)
            )),
            retry_max_delay_seconds=float(os.getenv(
                "CODEMONITOR_RETRY_MAX_DELAY", str(cls.retry_max_delay_seconds)
            )),
            health_failure_threshold=int(os.getenv(
                "CODEMONITOR_HEALTH_FAILURE_THRESHOLD",
                str(cls.health_failure_threshold),
            )),
            health_check_interval_seconds=float(os.getenv(
                "CODEMONITOR_HEALTH_INTERVAL",
                str(cls.health_check_interval_seconds),
            )),
            approval_timeout_seconds=float(os.getenv(
                "CODEMONITOR_APPROVAL_TIMEOUT",
                str(cls.approval_timeout_seconds),
            )),
            cancel_grace_seconds=float(os.getenv(
                "CODEMONITOR_CANCEL_GRACE", str(cls.cancel_grace_seconds)
            )),
            abort_confirm_timeout_seconds=float(os.getenv(
                "CODEMONITOR_ABORT_CONFIRM_TIMEOUT",
                str(cls.abort_confirm_timeout_seconds),
            )),
            local_command=os.getenv("CODEMONITOR_LOCAL_COMMAND", cls.local_command),
            credential_env=os.getenv(
                "CODEMONITOR_CREDENTIAL_ENV", cls.credential_env
            ),
            local_agent=LocalAgentConfig(
                model=os.getenv("CODEMONITOR_LOCAL_MODEL", DEFAULT_LOCAL_MODEL),
                thinking=os.getenv(
                    "CODEMONITOR_LOCAL_THINKING", DEFAULT_LOCAL_THINKING
                ),
                provider=os.getenv(
                    "CODEMONITOR_LOCAL_PROVIDER", DEFAULT_LOCAL_PROVIDER
                ),
            ),
            notification_queue_size=int(os.getenv(
                "CODEMONITOR_QUEUE_SIZE", str(cls.notification_queue_size)
            )),
            debug_log_size=int(os.getenv(
                "CODEMONITOR_DEBUG_LOG_SIZE", str(cls.debug_log_size)
            )),
            log_level=os.getenv("CODEMONITOR_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: remote=%s local_command=%s model=%s log_level=%s",
            config.remote_url, config.local_command,
            config.local_agent.model, config.log_level,
        )
        return config
