"""Structured logging configuration for Slotkeeper.

This module configures structlog with support for:
- JSON and console output formats
- File rotation based on size
- Correlation IDs for tracing one worker cycle across log lines
- Slot, task and session context binding

The logging system integrates structlog with Python's stdlib logging
for handlers (file rotation), while using structlog exclusively for
actual log emission.

Example usage:
    >>> from slotkeeper.config import LoggingConfig
    >>> from slotkeeper.logging import setup_logging, get_logger, bind_worker_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> logger = get_logger(__name__)
    >>> bind_worker_context(slot="dev-1", task_id="T-123", session_id="dev-1-123-ab12cd34")
    >>> logger.info("task_started", lane="development")
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
import sys
from typing import Any

import structlog

from slotkeeper.config import LoggingConfig

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add correlation_id to log event if set in context.

    Args:
        logger: Logger instance (unused, required by structlog protocol)
        method_name: Log method name (unused, required by structlog protocol)
        event_dict: Current event dictionary to augment

    Returns:
        Event dictionary with correlation_id added if available
    """
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID for current context."""
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get current correlation ID from context."""
    return _correlation_id.get()


def bind_worker_context(
    slot: str,
    task_id: str | None = None,
    session_id: str | None = None,
) -> None:
    """Bind slot, task and session context to all subsequent logs.

    Passing None for task_id or session_id removes a previously bound value,
    so a worker returning to idle stops tagging its lines with the old task.

    Args:
        slot: Worker slot name
        task_id: Task currently being worked on, if any
        session_id: Agent session currently supervised, if any
    """
    structlog.contextvars.bind_contextvars(slot=slot)
    for key, value in (("task_id", task_id), ("session_id", session_id)):
        if value is None:
            structlog.contextvars.unbind_contextvars(key)
        else:
            structlog.contextvars.bind_contextvars(**{key: value})


def add_worker_pid(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Tag each line with the emitting process id.

    Every slot runs in its own process, and a restarted slot keeps its name,
    so the pid separates lines written before and after a crash.
    """
    event_dict.setdefault("pid", os.getpid())
    return event_dict


# Client libraries that log every request at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def _build_handler(config: LoggingConfig) -> logging.Handler:
    if config.file is None:
        return logging.StreamHandler(sys.stdout)

    config.file.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        filename=config.file,
        maxBytes=config.rotation_size_mb * 1024 * 1024,
        backupCount=config.retention_count,
        encoding="utf-8",
    )


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog and the stdlib root logger.

    Lines go to ``config.file`` (size-rotated) when set, otherwise to stdout,
    rendered as JSON or for the console according to ``config.format``. Each
    line carries level, logger name, ISO timestamp, pid, the bound slot,
    task and session, and the correlation id when one is set. Below DEBUG,
    HTTP and driver loggers are held at WARNING so heartbeat traffic does not
    drown the worker's own events.

    Args:
        config: Logging configuration from SlotkeeperConfig
    """
    log_level = getattr(logging, config.level)

    handler = _build_handler(config)
    handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    chatty_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(chatty_level)

    renderer: Any
    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_worker_pid,
            add_correlation_id,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger bound to ``name``."""
    return structlog.get_logger(name)
