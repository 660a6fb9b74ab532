"""Centralized logging configuration with JSON-formatted extras."""

import json
import logging
import sys
from typing import Any

# Extras that must never reach a log sink in clear text.
SECRET_EXTRA_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "code",
        "client_secret",
        "session_id",
    }
)


def session_log_id(session_id: str | None) -> str | None:
    """Shorten an opaque session identifier so it is safe to log."""
    if not session_id:
        return None
    return f"{session_id[:6]}..."


class JSONExtrasFormatter(logging.Formatter):
    """Formatter that outputs a readable log line with extras as JSON.

    Output format:
        2024-01-15 10:30:45 | INFO | app.module | Message {"key": "value"}

    Extras named in ``SECRET_EXTRA_KEYS`` are replaced with ``"[redacted]"``.
    """

    RESERVED_ATTRS = frozenset(
        {
            "args",
            "asctime",
            "created",
            "exc_info",
            "exc_text",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "message",
            "module",
            "msecs",
            "msg",
            "name",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "stack_info",
            "taskName",
            "thread",
            "threadName",
        }
    )

    def _collect_extras(self, record: logging.LogRecord) -> dict[str, Any]:
        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in self.RESERVED_ATTRS or key.startswith("_"):
                continue
            extras[key] = "[redacted]" if key in SECRET_EXTRA_KEYS else value
        return extras

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        timestamp = self.formatTime(record, self.datefmt)
        base = f"{timestamp} | {record.levelname:<8} | {record.name} | {record.message}"

        extras = self._collect_extras(record)
        if extras:
            try:
                extras_str = json.dumps(extras, default=str, ensure_ascii=False)
                base = f"{base} {extras_str}"
            except (TypeError, ValueError):
                pass

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            base = f"{base}\n{record.exc_text}"

        return base


def setup_logging(level: str | int = logging.INFO) -> None:
    """Configure the root `app` logger with console output and JSON extras."""
    logger = logging.getLogger("app")
    logger.setLevel(level)

    # Avoid adding duplicate handlers if called multiple times
    if logger.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JSONExtrasFormatter(datefmt="%Y-%m-%d %H:%M:%S"))

    logger.addHandler(handler)

    # Prevent propagation to root logger (avoid duplicate output)
    logger.propagate = False
