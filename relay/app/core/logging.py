"""Structured logging configuration for the relay.

This module configures Python's standard logging module with text,
structured or JSON output. Rate-limit decisions carry contextual fields
(provider, bucket, attempt, chunk, wait_ms) so throttling behaviour can be
followed per request.
"""

import json
import logging
import logging.config
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Optional

from relay.app.core.config import settings

# Set by RequestIdMiddleware for the duration of a request
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "taskName",
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs one JSON object per record for log aggregation systems.
    """

    CONTEXT_FIELDS = [
        "request_id",   # X-Request-ID of the inbound request
        "provider",     # Upstream provider (catbox, sxcu, imgchest)
        "bucket",       # Rate limit bucket, if scoped
        "attempt",      # Retry attempt (0-indexed)
        "chunk",        # Chunk index of a chunked upload (1-indexed)
        "wait_ms",      # Wait before the next attempt
        "status_code",  # Upstream or response HTTP status
    ]

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string representation of the log record
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key in self.CONTEXT_FIELDS:
                continue
            log_data.setdefault("extra", {})[key] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds contextual fields to log records.

    The request id comes from the active request's context variable; the
    other fields default to None unless passed through ``extra=``.
    """

    CONTEXT_DEFAULTS = {
        "provider": None,
        "bucket": None,
        "attempt": None,
        "chunk": None,
        "wait_ms": None,
        "status_code": None,
    }

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_var.get()
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    log_format = settings.log_format.lower()
    log_level = settings.log_level.upper()

    formatters: Dict[str, Any] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": (
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
                " - request_id=%(request_id)s - provider=%(provider)s"
                " - bucket=%(bucket)s - attempt=%(attempt)s"
            )
        },
    }

    if log_format == "json":
        formatters["json"] = {"()": "relay.app.core.logging.JSONFormatter"}
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "relay.app.core.logging.ContextFilter"},
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": default_formatter,
                "stream": sys.stdout,
                "filters": ["context"],
            },
        },
        "loggers": {
            "relay": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging() -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config())

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str = "relay") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_log_context(
    provider: Optional[str] = None,
    bucket: Optional[str] = None,
    attempt: Optional[int] = None,
    chunk: Optional[int] = None,
    wait_ms: Optional[int] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Create a log context dictionary for use with the extra parameter.

    Example:
        >>> logger.info(
        ...     "Waiting before retry",
        ...     extra=get_log_context(provider="imgchest", attempt=2, wait_ms=4100)
        ... )
    """
    context = {
        "provider": provider,
        "bucket": bucket,
        "attempt": attempt,
        "chunk": chunk,
        "wait_ms": wait_ms,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
