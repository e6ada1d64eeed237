"""Structured logging configuration for Loop Medic.

Every record carries the monitor's session ID. Records logged while a
task is being recovered also carry that task's ID, scoped to the thread
(or asyncio task) doing the recovery.
"""

import json
import logging
import sys
import threading
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# One monitor runs per process, so the session ID is process-wide
_session_id: Optional[str] = None
_session_lock = threading.Lock()

# Task being handled in the current context, if any
current_task_id: ContextVar[Optional[str]] = ContextVar("task_id", default=None)


def get_session_id() -> str:
    """Get the monitor session ID, generating one on first use."""
    global _session_id
    with _session_lock:
        if _session_id is None:
            _session_id = str(uuid.uuid4())[:8]
        return _session_id


def set_session_id(sid: str) -> None:
    """Set the session ID reported by every thread."""
    global _session_id
    with _session_lock:
        _session_id = sid


def get_task_id() -> Optional[str]:
    return current_task_id.get()


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, include_extras: bool = True):
        """Initialize formatter.

        Args:
            include_extras: Include extra fields from log records.
        """
        super().__init__()
        self.include_extras = include_extras
        self._skip_fields = set(
            logging.LogRecord("", 0, "", 0, "", None, None).__dict__
        ) | {"message", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "session_id": get_session_id(),
        }

        task_id = get_task_id()
        if task_id is not None:
            log_data["task_id"] = task_id

        if record.levelno >= logging.ERROR:
            log_data["location"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_extras:
            for key, value in record.__dict__.items():
                if key not in self._skip_fields and not key.startswith("_"):
                    try:
                        json.dumps(value)
                        log_data[key] = value
                    except (TypeError, ValueError):
                        log_data[key] = str(value)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable console formatter with colors."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console output."""
        color = self.COLORS.get(record.levelname, "")
        tag = get_session_id()
        task_id = get_task_id()
        if task_id is not None:
            tag = f"{tag} {task_id}"

        timestamp = datetime.now().strftime("%H:%M:%S")
        level = record.levelname[0]

        # Format: [HH:MM:SS] L [session task] logger: message
        msg = f"{color}[{timestamp}] {level}{self.RESET} [{tag}] {record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure logging for the monitor.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        json_output: Use JSON format for stderr.
        log_file: Optional file path for JSON logs.
    """
    root_logger = logging.getLogger("loop_medic")
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    # stderr so the supervised loop's stdout stays clean
    console_handler = logging.StreamHandler(sys.stderr)
    if json_output:
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)


class LogContext:
    """Tag records logged in this context with a task ID.

    The tag lives in a context variable, so other threads keep logging
    without it and nested contexts unwind in any order.
    """

    def __init__(self, task_id: str):
        self.task_id = task_id
        self._token = None

    def __enter__(self):
        self._token = current_task_id.set(self.task_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._token is not None:
            current_task_id.reset(self._token)
            self._token = None
        return False
