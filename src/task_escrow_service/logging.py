"""
Structured JSON logging for the task escrow service.

Every record is one JSON object per line on stdout and in a daily log file.
Identifiers that tie a line to an escrow's audit trail (task, dispute,
webhook, delivery, release job) are lifted to top-level keys so the trail
of one task can be grepped across the scheduler, sweeper and dispatcher.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import UTC, datetime
from logging.handlers import TimedRotatingFileHandler
from typing import Any

SERVICE_LOGGER_NAME = "task_escrow_service"

VALID_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

CORRELATION_KEYS: tuple[str, ...] = ("task_id", "dispute_id", "webhook_id", "delivery_id", "job_id")

# Attributes every LogRecord carries; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        for key in CORRELATION_KEYS:
            if key in extra:
                entry[key] = extra.pop(key)
        if extra:
            entry["extra"] = extra

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class DailyRotatingFileHandler(TimedRotatingFileHandler):
    """Write to ``<directory>/YYYY-MM-DD.log`` and switch files at UTC midnight."""

    def __init__(self, directory: str) -> None:
        self._log_directory = directory
        super().__init__(self._current_path(), when="midnight", utc=True)

    def _current_path(self) -> str:
        return os.path.join(self._log_directory, f"{datetime.now(tz=UTC):%Y-%m-%d}.log")

    def doRollover(self) -> None:  # noqa: N802
        if self.stream:
            self.stream.close()
            self.stream = None  # type: ignore[assignment]
        self.baseFilename = os.path.abspath(self._current_path())
        if not self.delay:
            self.stream = self._open()
        self.rolloverAt = self.computeRollover(int(time.time()))


def setup_logging(level: str, log_directory: str) -> logging.Logger:
    """
    Configure the service root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_directory: Directory for the daily log files, created if missing

    Returns:
        The configured ``task_escrow_service`` logger

    Raises:
        ValueError: If level is not a valid log level
    """
    level_name = level.upper()
    if level_name not in VALID_LOG_LEVELS:
        raise ValueError(f"Invalid log level: {level}. Must be one of {sorted(VALID_LOG_LEVELS)}")

    os.makedirs(log_directory, exist_ok=True)
    formatter = JSONFormatter()
    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        DailyRotatingFileHandler(directory=log_directory),
    ]

    logger = logging.getLogger(SERVICE_LOGGER_NAME)
    logger.setLevel(level_name)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    for handler in handlers:
        handler.setLevel(level_name)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the service namespace.

    Module names already inside the package are used as-is so that
    ``get_logger(__name__)`` nests under the service root logger.
    """
    if name == SERVICE_LOGGER_NAME or name.startswith(f"{SERVICE_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{SERVICE_LOGGER_NAME}.{name}")
