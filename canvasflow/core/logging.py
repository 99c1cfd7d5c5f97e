"""Structured logging configuration for the dataflow engine.

TAG: [INFRA] [LOGGING]

This module provides the logging setup shared by every engine component:
- JSON structured logging for machine parsing
- Colored console output for development
- Optional rotating file handler (10MB max, 5 backups)
- Scoped structured context via LogContext

Engine modules only call ``get_logger(__name__)``; handlers are installed
once by the embedding application through ``setup_logging()``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, ClassVar

from canvasflow.core.config import Settings, get_settings


class LogLevel(str, Enum):
    """Log level enumeration for type-safe log level configuration."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Merge the LogContext scope with a record's own ``extra={"context": ...}``."""
    return {**getattr(record, "scoped_context", {}), **getattr(record, "context", {})}


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Format:
        {
            "timestamp": "2025-01-12T10:30:45.123Z",
            "level": "INFO",
            "logger": "canvasflow.services.dataflow.store",
            "message": "Cascade removed packet",
            "service": "Canvasflow",
            "context": {"node_id": "n2", "packet_id": "packet-..."}
        }
    """

    def __init__(self, service_name: str = "Canvasflow") -> None:
        """Initialize JSON formatter.

        Args:
            service_name: Name of the service stamped on every entry
        """
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        context = record_context(record)
        if context:
            log_entry["context"] = context

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        # Source location for ERROR and above
        if record.levelno >= logging.ERROR:
            log_entry["source"] = {
                "function": record.funcName,
                "line": record.lineno,
                "file": record.pathname,
            }

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class ColoredConsoleFormatter(logging.Formatter):
    """Colored console formatter for development environments."""

    # ANSI color codes
    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[41m",  # Red background
    }
    RESET: ClassVar[str] = "\033[0m"

    def __init__(self) -> None:
        """Initialize colored console formatter."""
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors.

        The record is copied first so other handlers keep the plain level name.
        """
        record = logging.makeLogRecord(record.__dict__)
        log_color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{log_color}{record.levelname}{self.RESET}"

        context = record_context(record)
        if context:
            record.msg = f"{record.msg} | Context: {json.dumps(context, default=str)}"

        return super().format(record)


def setup_logging(
    config: Settings | None = None,
    *,
    log_level: LogLevel | str | None = None,
    log_file: str | None = None,
    enable_console: bool = True,
) -> logging.Logger:
    """Configure the ``canvasflow`` logger hierarchy.

    Args:
        config: Settings to read defaults from. Defaults to the cached settings.
        log_level: Overrides ``config.LOG_LEVEL``. Unknown names fall back to INFO.
        log_file: Overrides ``config.LOG_FILE``. No file handler when both are None.
        enable_console: Install a stdout handler.

    Returns:
        The configured ``canvasflow`` logger.

    Examples:
        >>> logger = setup_logging(log_level="DEBUG")
        >>> logger.info("Engine ready", extra={"context": {"project": "demo"}})
    """
    config = config or get_settings()
    try:
        level_name = LogLevel((log_level or config.LOG_LEVEL).upper()).value
    except ValueError:
        level_name = LogLevel.INFO.value
    level = getattr(logging, level_name)

    logger = logging.getLogger("canvasflow")
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    file_name = log_file if log_file is not None else config.LOG_FILE
    if file_name:
        log_file_path = Path(file_name)
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=str(log_file_path),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        if config.LOG_JSON_FORMAT:
            file_handler.setFormatter(JSONFormatter(service_name=config.PROJECT_NAME))
        else:
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
        logger.addHandler(file_handler)

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        if config.DEBUG:
            console_handler.setFormatter(ColoredConsoleFormatter())
        else:
            console_handler.setFormatter(JSONFormatter(service_name=config.PROJECT_NAME))
        logger.addHandler(console_handler)

    logger.debug(
        "Logging initialized",
        extra={"context": {"log_level": level_name, "log_file": file_name}},
    )

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the specified name.

    Examples:
        >>> from canvasflow.core.logging import get_logger
        >>> logger = get_logger(__name__)
    """
    return logging.getLogger(name)


class LogContext:
    """Context helper for adding structured context to log records.

    Examples:
        >>> logger = get_logger(__name__)
        >>> with LogContext(logger, project="demo"):
        ...     logger.info("Loading project state")
    """

    def __init__(self, logger: logging.Logger, **context: Any) -> None:
        self.logger = logger
        self.context = context
        self.old_factory = logging.getLogRecordFactory()

    def __enter__(self) -> None:
        """Enter context and install a record factory carrying the context."""

        def record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
            record = self.old_factory(*args, **kwargs)
            record.scoped_context = {**getattr(record, "scoped_context", {}), **self.context}
            return record

        logging.setLogRecordFactory(record_factory)

    def __exit__(self, *args: Any) -> None:
        """Exit context and restore old factory."""
        logging.setLogRecordFactory(self.old_factory)


__all__ = [
    "ColoredConsoleFormatter",
    "JSONFormatter",
    "LogContext",
    "LogLevel",
    "get_logger",
    "record_context",
    "setup_logging",
]
