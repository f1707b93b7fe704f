"""Structured logging with structlog.

Security: Private keys, secrets, and credentials are NEVER logged.

Besides the console, output is segmented by severity into rotating
files under the log directory:
  info.log      INFO and above
  warnings.log  WARNING only
  errors.log    ERROR and above
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog


_CONFIGURED = False
_HANDLERS: list[logging.Handler] = []

# Fields that must NEVER appear in logs
_REDACTED_FIELDS = frozenset({
    "private_key", "signing_key", "secret", "password", "api_secret", "api_key",
    "slack_token", "auth_token", "mnemonic",
})


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Remove sensitive fields from log events."""
    for key in list(event_dict.keys()):
        if key.lower() in _REDACTED_FIELDS:
            event_dict[key] = "***REDACTED***"
    return event_dict


class _LevelRangeFilter(logging.Filter):
    def __init__(self, min_level: int, max_level: int = logging.CRITICAL):
        super().__init__()
        self._min = min_level
        self._max = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return self._min <= record.levelno <= self._max


def _severity_handler(
    path: Path, min_level: int, max_level: int, max_bytes: int, backup_count: int,
) -> logging.Handler:
    handler = RotatingFileHandler(
        str(path), maxBytes=max_bytes, backupCount=backup_count,
    )
    handler.setLevel(min_level)
    handler.addFilter(_LevelRangeFilter(min_level, max_level))
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_dir: str | None = None,
    max_bytes: int = 1024 * 1024,
    backup_count: int = 3,
    force: bool = False,
) -> None:
    """Configure structured logging for the application.

    Modules log at import time, which installs a console-only default.
    Pass ``force=True`` to replace it once the real config is known.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)

    # Standard-library root logger
    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in _HANDLERS:
        root.removeHandler(handler)
        handler.close()
    _HANDLERS.clear()

    # Console handler
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(log_level)
    _HANDLERS.append(console)

    # Severity-segmented files (optional)
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        _HANDLERS.append(_severity_handler(
            log_path / "info.log", max(log_level, logging.INFO), logging.CRITICAL,
            max_bytes, backup_count,
        ))
        _HANDLERS.append(_severity_handler(
            log_path / "warnings.log", logging.WARNING, logging.WARNING,
            max_bytes, backup_count,
        ))
        _HANDLERS.append(_severity_handler(
            log_path / "errors.log", logging.ERROR, logging.CRITICAL,
            max_bytes, backup_count,
        ))

    # structlog pipeline
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _redact_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )
    for handler in _HANDLERS:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger."""
    if not _CONFIGURED:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)
