"""Structured JSON logger.

Outputs one JSON object per line:
{"time":"2026-02-03T14:06:20.829529-05:00","level":"INFO","source":{"function":"search","file":"search.py","line":43},"msg":"search completed","query_id":"..."}
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator

# Fields attached to every record emitted from the current context
_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


def _json_default(value: Any) -> str:
    # UUIDs, datetimes and enums show up as field values all the time
    return str(value)


class StructuredFormatter(logging.Formatter):
    """JSON formatter producing slog-style records."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc).astimezone()

        log_entry: dict[str, Any] = {
            "time": now.isoformat(),
            "level": record.levelname,
            "source": {
                "function": record.funcName,
                "file": record.pathname,
                "line": record.lineno,
            },
            "msg": record.getMessage(),
        }

        ctx_fields = _log_context.get()
        if ctx_fields:
            log_entry.update(ctx_fields)

        if hasattr(record, "extra_fields"):
            log_entry.update(record.extra_fields)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=_json_default)


class StructuredLogger:
    """Logger that outputs structured JSON logs with context support."""

    def __init__(self, name: str = "app", level: str | None = None):
        self._logger = logging.getLogger(name)
        self._logger.setLevel(
            (level or os.getenv("LOG_LEVEL", "DEBUG")).upper()
        )

        self._logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        self._logger.addHandler(handler)

        self._logger.propagate = False

    def set_level(self, level: str) -> None:
        self._logger.setLevel(level.upper())

    def _log(
        self,
        level: int,
        msg: str,
        stacklevel: int = 3,
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        extra = {"extra_fields": fields} if fields else {}
        self._logger.log(
            level, msg, stacklevel=stacklevel, exc_info=exc_info, extra=extra
        )

    def debug(self, msg: str, **fields: Any) -> None:
        """Log a debug message with optional fields."""
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields: Any) -> None:
        """Log an info message with optional fields."""
        self._log(logging.INFO, msg, **fields)

    def warn(self, msg: str, **fields: Any) -> None:
        """Log a warning message with optional fields."""
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields: Any) -> None:
        """Log an error message with optional fields."""
        self._log(logging.ERROR, msg, **fields)

    def exception(self, msg: str, **fields: Any) -> None:
        """Log an error message with the active exception's traceback."""
        self._log(logging.ERROR, msg, exc_info=True, **fields)


def set_context(**fields: Any) -> None:
    """Set context fields that will be included in all subsequent log messages.

    Example:
        set_context(document_id="abc-123", user_id="user-456")
        logger.info("processing document")  # includes document_id and user_id
    """
    current = _log_context.get()
    _log_context.set({**current, **fields})


def clear_context() -> None:
    """Clear all context fields."""
    _log_context.set({})


def get_context() -> dict[str, Any]:
    """Get current context fields."""
    return _log_context.get().copy()


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Scope context fields to a block, restoring the previous fields on exit.

    Background tasks run on executor threads, which start with an empty
    context, so each task opens its own scope.
    """
    token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield
    finally:
        _log_context.reset(token)


logger = StructuredLogger("doc_search_server")
