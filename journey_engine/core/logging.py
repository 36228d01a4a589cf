"""Logging setup for the journey engine.

Every record passes through :class:`ExecutionContextFilter`, which stamps
the execution currently being advanced on the calling thread (see
:func:`set_logging_context`). Worker threads each carry their own context,
so concurrent executions never bleed identifiers into each other's logs.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(context)s%(message)s"

_log_context: ContextVar[Dict[str, Any]] = ContextVar("journey_log_context", default={})

_QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "urllib3": logging.WARNING,
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, with execution context as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        entry.update(getattr(record, "execution_context", {}))
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(entry, default=str)


class ExecutionContextFilter(logging.Filter):
    """Attach the calling thread's execution context to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = dict(_log_context.get())
        record.execution_context = context
        # rendered prefix for the plain-text format
        record.context = "".join(f"[{key}={value}] " for key, value in context.items())
        return True


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        log_file: Also write to this file, rotated at ``max_size`` bytes
        log_format: Format string for plain-text output; may use ``%(context)s``
        structured: Emit JSON lines instead of plain text
        max_size: Rotation threshold for ``log_file``
        backup_count: Rotated files to keep

    Returns:
        The root logger
    """
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    context_filter = ExecutionContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)
        root_logger.addHandler(handler)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**fields) -> None:
    """Add fields to the current thread's log context."""
    _log_context.set({**_log_context.get(), **fields})


def clear_logging_context() -> None:
    _log_context.set({})


def log_with_context(logger: logging.Logger, level: int, message: str, **fields) -> None:
    """Log ``message`` with one-off structured fields."""
    logger.log(level, message, extra={"extra_fields": fields})


class ErrorRecoveryLogger:
    """Logs retry decisions for node failures and storage writes."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"journey_engine.recovery.{component_name}")
        self.component_name = component_name

    def log_retry(self, operation: str, error: Exception, attempt: int, max_attempts: int) -> None:
        log_with_context(
            self.logger, logging.WARNING,
            f"Retrying {operation} after attempt {attempt}/{max_attempts}: {error}",
            component=self.component_name,
            operation=operation,
            error_type=type(error).__name__,
            attempt=attempt,
        )

    def log_retry_scheduled(self, node_id: str, error: Exception, retry_count: int,
                            max_retries: int, wake_at: datetime) -> None:
        log_with_context(
            self.logger, logging.WARNING,
            f"Node {node_id} failed transiently; retry {retry_count}/{max_retries} at {wake_at.isoformat()}",
            node_id=node_id,
            error_type=type(error).__name__,
            error_message=str(error),
            retry_count=retry_count,
            wake_at=wake_at,
        )

    def log_retries_exhausted(self, operation: str, error: Exception, attempts: int) -> None:
        log_with_context(
            self.logger, logging.ERROR,
            f"Giving up on {operation} after {attempts} attempts: {error}",
            component=self.component_name,
            operation=operation,
            error_type=type(error).__name__,
            attempts=attempts,
        )
