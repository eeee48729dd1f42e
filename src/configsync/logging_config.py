"""
Structured JSON Logging Configuration for ConfigSync

Provides:
- JSON formatted logs for easy parsing (Loki, ELK, etc.)
- Target tracking across log entries emitted by a target's task
- Log level filtering via environment variable
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional

# Context variable for the target being reconciled
target_ctx: ContextVar[Optional[str]] = ContextVar("target", default=None)

_RECORD_FIELDS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "message", "taskName",
}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2025-12-17T19:30:00.000Z",
        "level": "INFO",
        "logger": "configsync.machine",
        "message": "prod/web: sync cycle Succeeded at 3f2a...",
        "target": "prod/web",
        "extra": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        target = target_ctx.get()
        if target:
            log_obj["target"] = target

        extra_fields = {
            key: value for key, value in record.__dict__.items() if key not in _RECORD_FIELDS
        }
        if extra_fields:
            log_obj["extra"] = extra_fields

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> logging.Logger:
    """
    Configure logging for the operator.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (True) or standard format (False)

    Returns:
        Configured root logger
    """
    # Allow environment override
    level = os.environ.get("CONFIGSYNC_LOG_LEVEL", level).upper()
    json_format = os.environ.get("CONFIGSYNC_LOG_JSON", str(json_format)).lower() == "true"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.handlers = []
    uvicorn_access.setLevel(logging.WARNING)
    uvicorn_access.propagate = False

    return root_logger


def set_target(target: Optional[str]) -> None:
    """Set the target for the current context."""
    target_ctx.set(target)


def get_target() -> Optional[str]:
    """Get the target for the current context."""
    return target_ctx.get()
