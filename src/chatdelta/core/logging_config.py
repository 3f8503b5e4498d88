"""Process logging configuration with session context injection.

Every chatdelta module logs through ``logging.getLogger(__name__)``. This
module installs a single handler on the ``chatdelta`` logger and a filter
that stamps each record with the active session id, so diagnostics from
concurrent provider units can be correlated with the session log.

Usage:
    from chatdelta.core.logging_config import configure_logging, session_context

    configure_logging(level="DEBUG", format="human")

    with session_context(session_id):
        logger.info("Querying providers")  # record carries session_id
"""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, TextIO, Union

__all__ = [
    "ContextFilter",
    "StructuredFormatter",
    "HumanReadableFormatter",
    "configure_logging",
    "get_logger",
    "get_session_id",
    "session_context",
]

ROOT_LOGGER = "chatdelta"

_session_id: ContextVar[Optional[str]] = ContextVar("chatdelta_session_id", default=None)
_session_start: ContextVar[float] = ContextVar("chatdelta_session_start", default=0.0)


def get_session_id() -> Optional[str]:
    """Return the session id bound to the current context, if any."""
    return _session_id.get()


@contextmanager
def session_context(session_id: str) -> Iterator[str]:
    """Bind a session id (and its start time) to the current context."""
    id_token = _session_id.set(session_id)
    start_token = _session_start.set(time.time())
    try:
        yield session_id
    finally:
        _session_id.reset(id_token)
        _session_start.reset(start_token)


class ContextFilter(logging.Filter):
    """Logging filter that injects session context into log records.

    Adds ``session_id`` ("-" outside a session) and ``elapsed_ms`` (time
    since the session context was entered) to every record.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = _session_id.get() or "-"
        start = _session_start.get()
        record.elapsed_ms = round((time.time() - start) * 1000, 2) if start > 0 else 0.0
        return True


class StructuredFormatter(logging.Formatter):
    """JSON log formatter, one object per line.

    Example output:
        {"timestamp":"2024-01-15T10:30:45.123+00:00","level":"WARNING",
         "logger":"chatdelta.core.resilience","message":"Gemini failed after 3 attempt(s): ...",
         "session_id":"5f0c...","elapsed_ms":1042.5}
    """

    _standard_attrs = frozenset(
        {
            "name",
            "msg",
            "args",
            "levelname",
            "levelno",
            "pathname",
            "filename",
            "module",
            "lineno",
            "funcName",
            "created",
            "msecs",
            "relativeCreated",
            "thread",
            "threadName",
            "processName",
            "process",
            "taskName",
            "message",
            "exc_info",
            "exc_text",
            "stack_info",
            "session_id",
            "elapsed_ms",
        }
    )

    def __init__(self, *, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "session_id": getattr(record, "session_id", "-"),
            "elapsed_ms": getattr(record, "elapsed_ms", 0.0),
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra = {}
            for key, value in record.__dict__.items():
                if key in self._standard_attrs:
                    continue
                try:
                    json.dumps(value)
                    extra[key] = value
                except (TypeError, ValueError):
                    extra[key] = str(value)
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Readable formatter: ``HH:MM:SS [LEVEL] [session] module: message``."""

    def __init__(self, *, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        parts = []
        if self.include_timestamp:
            parts.append(datetime.fromtimestamp(record.created).strftime("%H:%M:%S"))
        parts.append(f"[{record.levelname}]")

        session_id = getattr(record, "session_id", "-")
        if session_id and session_id != "-":
            parts.append(f"[{session_id[:8]}]")

        name = record.name
        if name.startswith(ROOT_LOGGER + "."):
            name = name[len(ROOT_LOGGER) + 1 :]
        parts.append(f"{name}:")
        parts.append(record.getMessage())

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)
        return result


def configure_logging(
    *,
    level: Union[int, str] = logging.WARNING,
    format: str = "human",  # "human" or "structured"
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Configure the ``chatdelta`` logger with a single stream handler.

    Args:
        level: Log level (default: WARNING)
        format: "human" for readable lines, "structured" for JSON
        stream: Output stream (default: stderr)

    Returns:
        The configured ``chatdelta`` logger
    """
    if format not in ("human", "structured"):
        raise ValueError(f"Unknown log format '{format}'. Valid options: human, structured")

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        StructuredFormatter() if format == "structured" else HumanReadableFormatter()
    )
    handler.addFilter(ContextFilter())
    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ``chatdelta`` namespace."""
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
