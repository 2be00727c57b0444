"""
Logging Configuration

Structured logging for billing services: JSON output for production and a
readable console format for development. Billing context passed through
``extra=`` (customer_id, plan_id, metric, ...) is carried into every format.
"""

import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    PRETTY = "pretty"
    SIMPLE = "simple"


DEFAULT_SERVICE_NAME = "tally-billing"

# Attributes every LogRecord carries; anything else came in through extra=
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

# Context fields promoted to the top level of JSON entries
BILLING_CONTEXT_FIELDS = (
    "customer_id",
    "subscription_id",
    "plan_id",
    "metric",
    "currency",
)


def default_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO")


def default_format() -> str:
    if os.getenv("LOG_FORMAT"):
        return os.getenv("LOG_FORMAT")
    return LogFormat.JSON.value if os.getenv("ENVIRONMENT") == "production" else LogFormat.PRETTY.value


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Get the extra= fields attached to a log record."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, service_name: Optional[str] = None, environment: Optional[str] = None):
        super().__init__()
        self.service_name = service_name or os.getenv("SERVICE_NAME", DEFAULT_SERVICE_NAME)
        self.environment = environment or os.getenv("ENVIRONMENT", "development")

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "service": self.service_name,
            "environment": self.environment,
        }

        context = record_context(record)
        for key in BILLING_CONTEXT_FIELDS:
            if key in context:
                entry[key] = context.pop(key)
        if context:
            entry["context"] = context

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            entry["error"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
                "code": getattr(exc_value, "code", None),
            }
            entry["stack_trace"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """Human-readable log formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        level = f"{color}{record.levelname:8}{self.RESET}"

        message = f"{timestamp} | {level} | \033[90m{record.name}{self.RESET} | {record.getMessage()}"

        context = record_context(record)
        if context:
            message += " | " + " ".join(f"{k}={v}" for k, v in context.items())

        if record.exc_info:
            message += "\n" + "".join(traceback.format_exception(*record.exc_info))

        return message


class SimpleFormatter(logging.Formatter):
    """Plain single-line formatter without colors."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        return f"{timestamp} [{record.levelname}] {record.name}: {record.getMessage()}"


def build_formatter(format: str, service_name: Optional[str] = None) -> logging.Formatter:
    """Get the formatter for a format name."""
    if format == LogFormat.JSON or format == "json":
        return JSONFormatter(service_name=service_name)
    if format == LogFormat.PRETTY or format == "pretty":
        return PrettyFormatter()
    return SimpleFormatter()


def setup_logging(
    level: Optional[str] = None,
    format: Optional[str] = None,
    service_name: Optional[str] = None,
    stream=None,
) -> logging.Handler:
    """
    Configure root logging for a billing service.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL); LOG_LEVEL by default
        format: Log format (json, pretty, simple); LOG_FORMAT by default
        service_name: Service name for JSON entries; SERVICE_NAME by default
        stream: Output stream (stdout by default)

    Returns:
        The installed handler
    """
    level = (level or default_level()).upper()
    format = format or default_format()

    numeric_level = getattr(logging, level, None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(build_formatter(format, service_name))
    root_logger.addHandler(handler)

    # Rate fetches log every request at INFO otherwise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    root_logger.debug("Logging configured", extra={"level": level, "format": format})
    return handler


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance (typically for __name__)."""
    return logging.getLogger(name)


__all__ = [
    "LogFormat",
    "JSONFormatter",
    "PrettyFormatter",
    "SimpleFormatter",
    "build_formatter",
    "setup_logging",
    "get_logger",
    "record_context",
]
