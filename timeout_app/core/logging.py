"""Structured logging configuration.

JSON-formatted logs in production, a human-readable format in development.
Manager operations attach their context (user, room, classroom, session,
operation, error code) so that a single membership change can be followed
across the log stream.
"""
import logging
import json
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback


# Record attributes promoted to top-level JSON keys when present
CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "room_id",
    "classroom_id",
    "session_id",
    "operation",
    "error_code",
    "duration_ms",
    "attempt",
    "method",
    "path",
    "status_code",
)


class JSONFormatter(logging.Formatter):
    """Render each log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize the record plus any promoted context attributes."""
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        for attr in CONTEXT_FIELDS:
            if hasattr(record, attr):
                log_obj[attr] = getattr(record, attr)

        return json.dumps(log_obj, default=str)


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that stamps a fixed context on every record.

    Example:
        >>> log = ContextLogger(logger, {"room_id": "r1", "user_id": "u1"})
        >>> log.info("Participant joined")
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """Install a single stdout handler on the root logger.

    Called once by the app factory; JSON output is used in production and
    a plain text line everywhere else. Returns the root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    return root_logger


def get_logger(name: str, context: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """Get a logger, wrapped in a ContextLogger when context is given.

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Room created", extra={"room_id": "abc"})
    """
    logger = logging.getLogger(name)

    if context:
        return ContextLogger(logger, context)

    return logger


class LogTimer:
    """Context manager that logs how long an operation took.

    Expected rejections are not failures of the operation itself, so the
    caller marks them with ``rejected(code)`` and the timer logs a warning
    instead of an error.

    Example:
        >>> with LogTimer(logger, "join_room", room_id="r1") as timer:
        ...     ...
    """

    def __init__(self, logger: logging.Logger, operation: str, **context: Any):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time: Optional[float] = None
        self.error_code: Optional[str] = None

    def rejected(self, error_code: str):
        self.error_code = error_code

    def _extra(self, duration_ms: float) -> Dict[str, Any]:
        extra = {"operation": self.operation, "duration_ms": round(duration_ms, 2)}
        extra.update(self.context)
        if self.error_code:
            extra["error_code"] = self.error_code
        return extra

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (time.perf_counter() - self.start_time) * 1000

        if exc_type:
            self.logger.error(
                f"{self.operation} failed after {duration:.1f}ms",
                extra=self._extra(duration),
                exc_info=(exc_type, exc_val, exc_tb)
            )
        elif self.error_code:
            self.logger.warning(
                f"{self.operation} rejected ({self.error_code}) after {duration:.1f}ms",
                extra=self._extra(duration)
            )
        else:
            self.logger.info(
                f"{self.operation} completed in {duration:.1f}ms",
                extra=self._extra(duration)
            )
        return False
