"""Structured logging for Buildfarm.

structlog renders every event; stdlib logging only owns the single
output handler (stdout, or a size-rotated file). Two pieces of request
context are merged into each event:

- ``correlation_id``, set per HTTP request by the request middleware.
- ``task_id`` / ``host_id``, bound while a task report is handled so that
  lock, dispatch and provisioning lines can be traced back to one report.

Example usage:
    >>> from buildfarm.config import LoggingConfig
    >>> from buildfarm.logging import setup_logging, get_logger, bind_task_context
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="json"))
    >>> logger = get_logger(__name__)
    >>> bind_task_context(task_id="compile_linux_1", host_id="host-42")
    >>> logger.info("task_finished", status="succeeded")
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
from typing import Any

import structlog

from buildfarm.config import LoggingConfig

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

# Context keys owned by bind_task_context / clear_task_context
TASK_CONTEXT_KEYS = ("task_id", "host_id")

# Libraries that log every statement or callback at DEBUG
_CHATTY_LOGGERS = ("aiosqlite", "asyncio", "sqlalchemy.engine")


def add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor copying the current correlation id into the event."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def set_correlation_id(correlation_id: str | None) -> None:
    _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def bind_task_context(task_id: str, host_id: str | None = None) -> None:
    """Attach the task (and, once known, its host) to subsequent log lines.

    Binding is per async context, so concurrent reports never see each
    other's ids. Call again with ``host_id`` once the host is resolved.

    Args:
        task_id: Task the current report concerns
        host_id: Host running the task, if already looked up
    """
    context: dict[str, str] = {"task_id": task_id}
    if host_id is not None:
        context["host_id"] = host_id
    structlog.contextvars.bind_contextvars(**context)


def clear_task_context() -> None:
    """Drop the ids bound by ``bind_task_context``."""
    structlog.contextvars.unbind_contextvars(*TASK_CONTEXT_KEYS)


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


def _build_renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(config: LoggingConfig) -> None:
    """Install the handler and structlog pipeline described by ``config``.

    Replaces any handlers already on the root logger, so calling it twice
    (e.g. once per CLI invocation in tests) does not duplicate output.

    Args:
        config: Logging section of BuildfarmConfig
    """
    level = getattr(logging, config.level)

    handler = _build_handler(config)
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    if level < logging.WARNING:
        for name in _CHATTY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.INFO))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _build_renderer(config.format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger named after the calling module."""
    return structlog.get_logger(name)
