"""
Structured logging configuration for tfpipeline.

Emits one JSON object per log line so CI log viewers and aggregators can
filter by run or by task. Every entry carries the correlation ID of the
fan-out run and, inside a worker, the label of the task being executed.

Log Format:
    {
        "timestamp": "2026-10-19T10:30:00.123456+00:00",
        "level": "INFO",
        "logger": "tfpipeline.orchestrator",
        "correlation_id": "abc123...",
        "task_label": "1.12.0.init",
        "message": "Task completed",
        ...additional context...
    }

Usage:
    from tfpipeline.logging_config import setup_logging, get_logger, log_with_context

    setup_logging(log_level="INFO")
    logger = get_logger(__name__)
    log_with_context(logger, "info", "Dispatching tasks", count=4)
"""

import json
import logging
import sys
import uuid
from collections.abc import Callable
from contextvars import ContextVar
from datetime import UTC, datetime
from types import TracebackType
from typing import override

# Both variables are copied into worker threads with contextvars.copy_context()
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)
_task_label: ContextVar[str | None] = ContextVar("task_label", default=None)

_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


class StructuredFormatter(logging.Formatter):
    """
    Formatter that renders log records as JSON objects.

    Standard fields are timestamp, level, logger, correlation_id, task_label
    and message. Extra fields passed through ``extra=`` become top-level keys.
    Values that are not JSON serializable are rendered with ``str()``.
    """

    @override
    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": _correlation_id.get(),
            "task_label": _task_label.get(),
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_"):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging on the root logger.

    Replaces any existing root handlers with a single stdout handler using
    StructuredFormatter. Call once per process, from the CLI entry point.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(StructuredFormatter())
    root_logger.addHandler(console_handler)

    logging.getLogger("boto3").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get logger for a module."""
    return logging.getLogger(name)


def generate_correlation_id() -> str:
    """Generate a new correlation ID (UUID4 string) for one fan-out run."""
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID for the current context."""
    _ = _correlation_id.set(correlation_id)


def get_correlation_id() -> str | None:
    """Get current correlation ID, or None if not set."""
    return _correlation_id.get()


def set_task_label(label: str | None) -> None:
    """Set the task label included in log entries emitted by a worker."""
    _ = _task_label.set(label)


def get_task_label() -> str | None:
    """Get the task label of the current context."""
    return _task_label.get()


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    **context: object,
) -> None:
    """
    Log message with additional structured context.

    Context fields are added to the log entry as top-level JSON fields.

    Args:
        logger: Logger instance
        level: Log level (debug, info, warning, error, critical)
        message: Human-readable log message
        **context: Additional context fields as keyword arguments

    Example:
        >>> log_with_context(logger, "info", "Task completed", label="1.12.0.init")
    """
    log_func: Callable[..., None] = getattr(logger, level.lower())
    log_func(message, extra=dict(context))


class LogContext:
    """
    Context manager scoping a correlation ID to a block of code.

    The previous correlation ID is restored on exit, so nested runs (a job
    calling run_matrix) do not clobber the caller's ID.

    Example:
        >>> with LogContext() as correlation_id:
        ...     run_matrix(ctx, descriptors)
    """

    def __init__(self, correlation_id: str | None = None) -> None:
        self.correlation_id: str = correlation_id or generate_correlation_id()
        self._previous: str | None = None

    def __enter__(self) -> str:
        self._previous = _correlation_id.get()
        set_correlation_id(self.correlation_id)
        return self.correlation_id

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        set_correlation_id(self._previous)
