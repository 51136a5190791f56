"""Agent configuration using Pydantic Settings.

This module provides centralized configuration management for the droplet agent.
All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
import os
import sys
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Agent settings loaded from environment variables.

    Attributes:
        base_dir: Root of the agent's on-disk state.
        droplets_dir: Directory holding one subdirectory per instance.
            Defaults to ``<base_dir>/apps``.
        du_dump_dir: Where ``apps.du.*`` dumps are written. Defaults to base_dir.
        runtime_names: Names of the runtimes this agent may enable.
        runtimes: Runtime definitions keyed by name (executable, version_flag,
            version_output, additional_checks, environment, ...).
        crash_reap_timeout_seconds: Age after which crashed instances are reaped.
        crash_reap_interval_seconds: Interval of the crash reaper loop.
        disk_usage_interval_seconds: Interval of the droplet fs usage probe.
        droplet_fs_percent_used_threshold: Usage percent above which new
            instances should be refused.
        runtime_probe_timeout_seconds: Timeout for version and additional checks.
        disable_dir_cleanup: If True, instance directories are never deleted.
        status_port: Port for the status HTTP server.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Filesystem layout
    base_dir: str = "/var/vcap/data/dea"
    droplets_dir: str = ""
    du_dump_dir: str = ""

    # Runtimes
    runtime_names: str | list[str] = []
    runtimes: dict[str, dict[str, Any]] = {}
    runtime_probe_timeout_seconds: float = 10.0

    # Reaping
    crash_reap_timeout_seconds: int = 3600
    crash_reap_interval_seconds: int = 30
    disable_dir_cleanup: bool = False

    # Disk usage
    disk_usage_interval_seconds: int = 60
    droplet_fs_percent_used_threshold: int = 95

    # Server Configuration
    status_port: int = 8090
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("runtime_names", mode="before")
    @classmethod
    def parse_runtime_names(cls, v: Any) -> list[str]:
        """Parse runtime names from string or list.

        Accepts:
        - JSON array: '["ruby18", "node"]'
        - Comma-separated: 'ruby18,node'
        - Already a list: ["ruby18", "node"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [name.strip() for name in v.split(",") if name.strip()]
        return []

    model_config = SettingsConfigDict(
        env_prefix="DEA_",
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_post_init(self, __context: Any) -> None:
        """Derive directory defaults from base_dir."""
        if not self.droplets_dir:
            self.droplets_dir = os.path.join(self.base_dir, "apps")
        if not self.du_dump_dir:
            self.du_dump_dir = self.base_dir


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the agent.

    Every event carries the log level, an ISO timestamp and the emitting
    module. Rendered as JSON lines for log shippers, or coloured key=value
    pairs when run by hand.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.CallsiteParameterAdder(
            {structlog.processors.CallsiteParameter.MODULE}
        ),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
