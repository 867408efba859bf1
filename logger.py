"""
Structured logging for the session context service.

Every log call takes keyword fields. Correlation fields (``session_id``,
``user_id``, ``rule_id``) are lifted out of the field bag so a JSON log line
can be filtered by session without parsing ``data``, and the console output
tags each line with the session it belongs to.
"""

import os
import sys
import time
import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from functools import wraps
import traceback

CORRELATION_FIELDS = ("session_id", "user_id", "rule_id")


def split_fields(fields: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Separate correlation fields from the remaining structured data."""
    if not fields:
        return {}, {}
    correlation = {k: fields[k] for k in CORRELATION_FIELDS if fields.get(k) is not None}
    data = {k: v for k, v in fields.items() if k not in correlation}
    return correlation, data


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, correlation fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        correlation, data = split_fields(getattr(record, "fields", None))
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **correlation,
        }
        if data:
            entry["data"] = data

        if record.exc_info:
            entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter with colors."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        correlation, data = split_fields(getattr(record, "fields", None))
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")

        level = f"{record.levelname:8}"
        if self.use_color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"

        msg = f"[{timestamp}] {level} | {record.name}"
        if "session_id" in correlation:
            msg += f" [{correlation['session_id']}]"
        msg += f": {record.getMessage()}"

        rest = {k: v for k, v in correlation.items() if k != "session_id"}
        rest.update(data)
        if rest:
            msg += " | " + ", ".join(f"{k}={v}" for k, v in rest.items())

        if record.exc_info:
            msg += f"\n{self.formatException(record.exc_info)}"

        return msg


class AppLogger:
    """Application logger with structured logging support."""

    _instances: Dict[str, 'AppLogger'] = {}

    def __init__(self, name: str, level: str = None):
        """
        Initialize logger.

        Args:
            name: Logger name (usually module name)
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        self.name = name
        self.level = level or os.getenv("LOG_LEVEL", "INFO")
        self.logger = logging.getLogger(name)
        self._setup_handlers()

    def _setup_handlers(self) -> None:
        if self.logger.handlers:
            return

        self.logger.setLevel(getattr(logging, self.level.upper(), logging.INFO))

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(ConsoleFormatter(use_color=sys.stdout.isatty()))
        self.logger.addHandler(console_handler)

        # Structured JSON file output is opt-in
        log_file = os.getenv("LOG_FILE")
        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(file_handler)

        self.logger.propagate = False

    def _log(self, level: int, message: str, fields: Dict[str, Any], exc_info: bool = False) -> None:
        if not self.logger.isEnabledFor(level):
            return
        if exc_info:
            fields["traceback"] = traceback.format_exc()
        record = self.logger.makeRecord(self.name, level, "", 0, message, (), None)
        record.fields = fields
        self.logger.handle(record)

    def debug(self, message: str, **fields) -> None:
        self._log(logging.DEBUG, message, fields)

    def info(self, message: str, **fields) -> None:
        self._log(logging.INFO, message, fields)

    def warning(self, message: str, **fields) -> None:
        self._log(logging.WARNING, message, fields)

    def error(self, message: str, exc_info: bool = False, **fields) -> None:
        self._log(logging.ERROR, message, fields, exc_info)

    def critical(self, message: str, exc_info: bool = False, **fields) -> None:
        self._log(logging.CRITICAL, message, fields, exc_info)

    def request(self, method: str, path: str, status: int, duration_ms: float, **fields) -> None:
        """Log an HTTP request. 5xx responses are logged as errors."""
        level = logging.ERROR if status >= 500 else logging.INFO
        self._log(
            level,
            f"{method} {path} -> {status}",
            {"method": method, "path": path, "status": status,
             "duration_ms": round(duration_ms, 2), **fields}
        )

    def store_op(self, operation: str, collection: str, duration_ms: float, **fields) -> None:
        """Log a document store call."""
        self.debug(
            f"Store {operation} on '{collection}'",
            operation=operation,
            collection=collection,
            duration_ms=round(duration_ms, 2),
            **fields
        )

    def session_event(self, session_id: str, event: str, **fields) -> None:
        """Log a session lifecycle transition."""
        self.info(f"Session {event}", session_id=session_id, event=event, **fields)

    def rule_fired(self, rule: str, action: str, success: bool, **fields) -> None:
        """Log a context rule outcome. Failures are warnings."""
        level = logging.INFO if success else logging.WARNING
        status = "fired" if success else "failed"
        self._log(
            level,
            f"Rule '{rule}' {status} ({action})",
            {"rule": rule, "action": action, "success": success, **fields}
        )


def get_logger(name: str) -> AppLogger:
    """Get or create the AppLogger for ``name``."""
    if name not in AppLogger._instances:
        AppLogger._instances[name] = AppLogger(name)
    return AppLogger._instances[name]


def log_function_call(logger: AppLogger = None):
    """
    Decorator logging the duration of a call at debug level, and any
    exception it raises at error level before re-raising it.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            nonlocal logger
            if logger is None:
                logger = get_logger(func.__module__)

            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{func.__name__} raised {type(e).__name__}: {e}",
                    exc_info=True,
                    duration_ms=round((time.perf_counter() - start) * 1000, 2)
                )
                raise
            logger.debug(
                f"{func.__name__} completed",
                duration_ms=round((time.perf_counter() - start) * 1000, 2)
            )
            return result

        return wrapper
    return decorator
