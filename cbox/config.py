"""Process configuration using Pydantic Settings.

This module provides the settings that tune cbox itself (logging, timeouts,
helper behaviour). Per-project configuration lives in ``.cbox.toml`` and is
handled by ``models.project``. All settings can be overridden via ``CBOX_``
environment variables or a .env file.
"""

import getpass
import logging
import os
import sys

import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_bridge_socket_dir() -> str:
    user = os.environ.get("USER") or getpass.getuser()
    return f"/tmp/claude-mcp-browser-bridge-{user}"


class Settings(BaseSettings):
    """cbox settings loaded from environment variables.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
        state_dir_name: Directory (inside the project and each worktree)
            holding cbox state files.
        spinner_interval_seconds: Repaint tick of the live spinner.
        helper_start_timeout_seconds: How long to wait for a helper process
            to print its handshake line.
        process_stop_timeout_seconds: Grace period after SIGTERM before a
            helper process is killed.
        container_stop_timeout_seconds: Grace period passed to docker stop.
        traefik_image: Image used for the shared reverse proxy.
        fast_model: Model used for title polishing and slug generation.
        bridge_socket_dir: Host directory holding browser bridge sockets.
    """

    log_level: str = "WARNING"
    log_format: str = "text"

    state_dir_name: str = ".cbox"

    # Timing
    spinner_interval_seconds: float = 0.08
    helper_start_timeout_seconds: float = 10.0
    process_stop_timeout_seconds: float = 5.0
    container_stop_timeout_seconds: int = 5

    # External images and models
    traefik_image: str = "traefik:v3"
    fast_model: str = "claude-haiku-4-5-20251001"

    bridge_socket_dir: str = _default_bridge_socket_dir()

    model_config = SettingsConfigDict(
        env_prefix="CBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


def configure_logging(log_level: str = "WARNING", log_format: str = "text") -> None:
    """Configure structured logging for the CLI and its helper processes.

    Logs are written to stderr: helper processes reserve stdout for their
    handshake line.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for machine consumption, 'text' for humans.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.WARNING)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()
