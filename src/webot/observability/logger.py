"""
observability/logger.py — Webot Structured Logger

Sets up structlog with:
  - JSON output to a rotating log file
  - Optional console output: human-readable (dev mode) or JSON (prod mode)
  - Consistent fields on every log line: timestamp, level, event, session_key

The debug switch is resolved once, before setup_logging() is called (see
webot.config.settings.resolve_debug), and handed in as a plain boolean.
Nothing in the client consults a process-wide debug flag at runtime.

Usage:
    from webot.observability.logger import get_logger, setup_logging

    setup_logging(level="INFO", debug=settings.debug_enabled())
    log = get_logger(__name__)
    log.info("gateway.connected", url="ws://127.0.0.1:18789")
    log.warning("codec.decode_failed", reason="unrecognized_frame")
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

import structlog


LOG_FILE_NAME = "webot.log"

# Chatty at DEBUG; held at WARNING regardless of the client's level.
_QUIET_LOGGERS = (
    "websockets",
    "websockets.client",
    "websockets.server",
    "httpx",
    "httpcore",
    "asyncio",
)

# Applied to structlog events and to records from plain stdlib loggers alike.
_PRE_CHAIN: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
]


def _formatter(renderer: Any) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=_PRE_CHAIN,
    )


def _file_handler(log_dir: str | Path, level: int, max_bytes: int, backup_count: int) -> logging.Handler:
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    handler = logging.handlers.RotatingFileHandler(
        filename=path / LOG_FILE_NAME,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    return handler


def _console_handler(level: int, json_format: bool) -> logging.Handler:
    # stderr, so stdout stays free for the chat transcript
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    renderer = structlog.processors.JSONRenderer() if json_format else structlog.dev.ConsoleRenderer(colors=True)
    handler.setFormatter(_formatter(renderer))
    return handler


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path | None = "./data/logs",
    json_format: bool = True,
    console_output: bool = True,
    debug: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Route structlog through stdlib logging. Safe to call again; each call
    replaces the root handlers.

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL (ignored when debug is True)
        log_dir:        Where webot.log rotates. None means no log file.
        json_format:    Console renderer: JSON when True, coloured key=value otherwise.
                        The file is JSON either way.
        console_output: Mirror log lines to stderr.
        debug:          The resolved debug switch.
        max_bytes:      Rotation threshold for webot.log.
        backup_count:   Rotated files kept alongside it.
    """
    numeric_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = []
    if log_dir is not None:
        handlers.append(_file_handler(log_dir, numeric_level, max_bytes, backup_count))
    if console_output:
        handlers.append(_console_handler(numeric_level, json_format))
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*_PRE_CHAIN, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "webot", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Logger for `name`, pre-bound with any keyword values.

    Example:
        log = get_logger(__name__, component="correlator")
        log.info("correlator.registered", request_id="r1")
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_session(session_key: str) -> None:
    """Tag every later log line in this context with the chat session key."""
    structlog.contextvars.bind_contextvars(session_key=session_key)


def clear_session() -> None:
    structlog.contextvars.clear_contextvars()
