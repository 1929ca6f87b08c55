"""Structured logging configuration for the gatekeeper.

Uses Python's standard logging module, configured through dictConfig,
with an optional JSON formatter for log aggregation in production.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from gatekeeper.app.core.config import Settings, settings as default_settings

# Attributes every LogRecord carries; anything else arrived via extra=
_RESERVED_ATTRS = frozenset((
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "asctime", "taskName",
))


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs one JSON object per record. Context fields are promoted to the
    top level; any other extra attributes are nested under "extra".
    """

    # Contextual fields for boundary events
    CONTEXT_FIELDS = [
        "identifier",     # Resolved client identifier (admission control)
        "path",           # Request path
        "method",         # HTTP method
        "status_code",    # HTTP response status
        "url",            # Outbound request URL
        "attempt",        # 1-based retry number
        "attempts_made",  # Total attempts when retries are exhausted
        "delay_seconds",  # Backoff delay before the next attempt
    ]

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
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
    """Logging filter that fills in missing context fields.

    Text formats reference these attributes directly, so every record needs
    them even when the caller passed no extra= context.
    """

    CONTEXT_DEFAULTS = {field: None for field in JSONFormatter.CONTEXT_FIELDS}

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config(config: Optional[Settings] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Args:
        config: Settings to read log level and format from (defaults to the
            global settings instance)

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    config = config or default_settings
    log_format = config.log_format.lower()
    log_level = config.log_level.upper()

    formatters: Dict[str, Dict[str, Any]] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - identifier=%(identifier)s - url=%(url)s - attempt=%(attempt)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {
            "()": "gatekeeper.app.core.logging.JSONFormatter",
        }
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

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {
                "()": "gatekeeper.app.core.logging.ContextFilter",
            },
        },
        "handlers": handlers,
        "loggers": {
            "gatekeeper": {
                "level": log_level,
                "handlers": ["console", "error_console"],
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


def setup_logging(config: Optional[Settings] = None) -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config(config))

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str = "gatekeeper") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_log_context(
    identifier: Optional[str] = None,
    url: Optional[str] = None,
    attempt: Optional[int] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Create a log context dictionary for use with the extra parameter.

    None values are dropped so they do not shadow the ContextFilter defaults.

    Example:
        >>> logger.warning(
        ...     "Retrying upstream call",
        ...     extra=get_log_context(url="https://api.example.com", attempt=1)
        ... )
    """
    context = {
        "identifier": identifier,
        "url": url,
        "attempt": attempt,
    }
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}
