"""Structured logging configuration for the rate limiter.

This module provides a structured logging setup using Python's standard
logging module with JSON formatting for production environments.
"""

import json
import logging
import logging.config
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from ratelimiter.app.core.config import settings

_request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def set_request_id(request_id: Optional[str]) -> None:
    """Bind a request id to the current async context."""
    _request_id_var.set(request_id)


def get_current_request_id() -> Optional[str]:
    return _request_id_var.get()


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs log records as JSON objects for consumption by log aggregation
    systems like ELK Stack or Grafana Loki.

    Attributes:
        fields: List of fields to include in JSON output
    """

    # Standard fields always included
    STANDARD_FIELDS = ["name", "levelname", "message", "timestamp"]

    # Contextual fields for admission decisions
    CONTEXT_FIELDS = [
        "request_id",    # Request ID from X-Request-ID header
        "node_id",       # Node that produced the record
        "identifier",    # Rate limited caller (IP, API key, route)
        "action",        # Action part of the limiter key
        "limiter_key",   # Full limiter key
        "fallback",      # Whether the local fallback path was used
        "path",          # Request path
        "method",        # HTTP method
        "status_code",   # HTTP response status
    ]

    _RESERVED = frozenset((
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "timestamp", "logger", "level", "source", "taskName",
    ))

    def __init__(
        self,
        fields: Optional[list] = None,
        datefmt: Optional[str] = None,
    ):
        """Initialize JSON formatter.

        Args:
            fields: Custom fields to include (defaults to all standard + context)
            datefmt: Date format string (ISO8601 by default)
        """
        super().__init__(datefmt=datefmt)
        self.fields = fields or (self.STANDARD_FIELDS + self.CONTEXT_FIELDS)

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON string representation of the log record
        """
        log_data: Dict[str, Any] = {}

        record.message = record.getMessage()

        log_data["timestamp"] = datetime.now().astimezone().isoformat()
        log_data["level"] = record.levelname
        log_data["logger"] = record.name
        log_data["message"] = record.message
        log_data["service"] = "rate-limiter"

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        for field in self.CONTEXT_FIELDS:
            if hasattr(record, field):
                value = getattr(record, field)
                if value is not None and value != "-":
                    log_data[field] = value

        for key, value in record.__dict__.items():
            if key in self._RESERVED or key in self.CONTEXT_FIELDS:
                continue
            log_data.setdefault("extra", {})[key] = value

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that adds contextual fields to log records.

    Adds default values for request_id, node_id and the limiter fields
    if not already present in the log record.
    """

    CONTEXT_DEFAULTS = {
        "request_id": None,
        "node_id": None,
        "identifier": None,
        "action": None,
        "limiter_key": None,
        "fallback": None,
        "path": None,
        "method": None,
        "status_code": None,
    }

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context fields to log record if not present.

        Args:
            record: Log record to enrich

        Returns:
            True to allow the record through
        """
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        if record.request_id is None:
            record.request_id = get_current_request_id()
        if record.node_id is None:
            record.node_id = settings.node_id
        return True


def file_logging_enabled() -> bool:
    """JSON file logs are written outside production when LOG_DIR is set."""
    return bool(settings.log_dir) and settings.app_env != "production"


def get_logging_config() -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    log_format = getattr(settings, "log_format", "text").lower()
    log_level = settings.effective_log_level

    formatters = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - node_id=%(node_id)s - request_id=%(request_id)s - identifier=%(identifier)s"
        },
        "json": {
            "()": "ratelimiter.app.core.logging.JSONFormatter",
        },
    }

    if log_format == "json":
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context"],
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "level": "ERROR",
            "formatter": default_formatter,
            "stream": sys.stderr,
            "filters": ["context"],
        },
    }
    ratelimiter_handlers = ["console", "error_console"]

    if file_logging_enabled():
        handlers["error_file"] = {
            "class": "logging.FileHandler",
            "level": "ERROR",
            "formatter": "json",
            "filename": os.path.join(settings.log_dir, "error.log"),
            "filters": ["context"],
            "delay": True,
        }
        handlers["combined_file"] = {
            "class": "logging.FileHandler",
            "level": log_level,
            "formatter": "json",
            "filename": os.path.join(settings.log_dir, "combined.log"),
            "filters": ["context"],
            "delay": True,
        }
        ratelimiter_handlers += ["error_file", "combined_file"]

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {
                "()": "ratelimiter.app.core.logging.ContextFilter",
            },
        },
        "handlers": handlers,
        "loggers": {
            "ratelimiter": {
                "level": log_level,
                "handlers": ratelimiter_handlers,
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
            "uvicorn.access": {
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
    """Configure logging for the service."""
    if file_logging_enabled():
        Path(settings.log_dir).mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(get_logging_config())

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "ratelimiter") -> logging.Logger:
    """Get a logger instance with the specified name.

    Args:
        name: Logger name, defaults to "ratelimiter"

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)


def get_log_context(
    identifier: Optional[str] = None,
    action: Optional[str] = None,
    limiter_key: Optional[str] = None,
    request_id: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Create a log context dictionary for use with extra parameter.

    Args:
        identifier: Rate limited caller
        action: Action part of the limiter key
        limiter_key: Full limiter key
        request_id: Request ID
        **extra: Additional custom fields

    Returns:
        Dictionary suitable for passing as extra= parameter to logging calls

    Example:
        >>> logger.warning(
        ...     "Rate limit exceeded",
        ...     extra=get_log_context(identifier="10.0.0.1", action="default")
        ... )
    """
    context = {
        "identifier": identifier,
        "action": action,
        "limiter_key": limiter_key,
        "request_id": request_id,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
