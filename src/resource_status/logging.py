"""
Structured logging for the Resource Status service.

Every process (api, worker, scheduler) logs one JSON object per line so that
queue transitions, collection failures and connection-state changes can be
filtered by field rather than by message text.

Features:
- JSON-formatted log output with the record's ``extra`` fields inlined
- A single ``resource_status`` logger namespace shared by all modules
- Plain-text fallback format for interactive use
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TextIO

if TYPE_CHECKING:
    from resource_status.config import LoggingConfig

ROOT_LOGGER_NAME = "resource_status"

# Plain format used when json_format is off
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_RECORD_KEYS = frozenset(
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
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    Format each record as one JSON object.

    Fields: ``timestamp`` (UTC ISO 8601), ``level``, ``logger``, ``message``,
    ``exception`` when the record carries exc_info, and every non-None
    ``extra`` field inlined at the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or value is None:
                continue
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def _build_handler(level: int, json_format: bool, stream: TextIO) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setLevel(level)
    handler.setFormatter(
        JSONFormatter() if json_format else logging.Formatter(DEFAULT_LOG_FORMAT)
    )
    return handler


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    log_to_stdout: bool = True,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Configure the ``resource_status`` logger for one process.

    Calling it again replaces the previous handler.

    Args:
        config: LoggingConfig section; when given, its level, format and
            log_to_stdout override the keyword arguments.
        level: Log level used without a config.
        json_format: Emit JSON lines instead of the plain format.
        log_to_stdout: Attach a stream handler at all.
        stream: Where the handler writes (default: sys.stdout). One-shot
            CLI commands pass sys.stderr so their stdout stays parseable.

    Returns:
        The configured ``resource_status`` logger.

    Example:
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Worker started", extra={"worker_id": "worker-1"})
    """
    if config is not None:
        level = config.level
        json_format = config.json_format
        log_to_stdout = config.log_to_stdout
    log_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(log_level)
    logger.handlers.clear()
    if log_to_stdout:
        logger.addHandler(_build_handler(log_level, json_format, stream or sys.stdout))
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``resource_status`` namespace."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)
