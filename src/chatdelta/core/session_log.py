"""
Session logger: per-attempt records and end-of-session summaries.

A SessionLogger assigns session ids, writes one record per provider attempt
and one summary record when the session ends. Records go to one or more
append-only sinks through a single writer thread, so records from
concurrent provider units keep their arrival order and sink I/O stays off
the event loop. A failing sink never fails the orchestration: the problem
is kept as a ``LoggingWarning`` on ``SessionLogger.warnings`` and reported
through ``logging`` instead.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, TextIO, Union

from filelock import FileLock

from chatdelta.core.errors import LoggingWarning
from chatdelta.core.providers.base import Provider
from chatdelta.core.resilience import QueryOutcome

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".chatdelta" / "logs"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class LogSink(Protocol):
    """Append-only destination for log records."""

    def write(self, record: Dict[str, Any]) -> None:
        ...


class JsonlFileSink:
    """
    Appends JSON lines to ``<log_dir>/<YYYYMMDD>.jsonl``.

    A file lock guards each append so several processes can share the
    directory.
    """

    def __init__(self, log_dir: Union[str, Path, None] = None):
        self.log_dir = Path(log_dir) if log_dir else DEFAULT_LOG_DIR

    def path_for(self, when: Optional[datetime] = None) -> Path:
        return self.log_dir / f"{(when or _utcnow()):%Y%m%d}.jsonl"

    def write(self, record: Dict[str, Any]) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for()
        with FileLock(str(path) + ".lock", timeout=5):
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, default=str) + "\n")


class StreamSink:
    """Writes JSON lines to an open text stream."""

    def __init__(self, stream: TextIO):
        self.stream = stream

    def write(self, record: Dict[str, Any]) -> None:
        self.stream.write(json.dumps(record, default=str) + "\n")
        self.stream.flush()


class MemorySink:
    """Keeps records in memory."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    def write(self, record: Dict[str, Any]) -> None:
        self.records.append(record)


# ---------------------------------------------------------------------------
# Session Logger
# ---------------------------------------------------------------------------


@dataclass
class _SessionState:
    started_at: datetime
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    providers: Dict[str, Dict[str, int]] = field(default_factory=dict)


class SessionLogger:
    """
    Writes attempt and summary records for logging sessions.

    Counting happens on the caller's thread; sink writes happen on one
    background writer thread fed by a queue, so a slow sink never stalls the
    event loop running the provider units. ``flush()`` waits until every
    queued record has been written; ``end()`` flushes and stops the writer
    once no session is left open.

    Example:
        session_logger = SessionLogger([JsonlFileSink()])
        session_id = session_logger.begin()
        session_logger.log(session_id, Provider.GPT, 1, outcome)
        summary = session_logger.end(session_id)
    """

    def __init__(self, sinks: Optional[Sequence[LogSink]] = None):
        self.sinks: List[LogSink] = list(sinks or [])
        self.warnings: List[LoggingWarning] = []
        self._sessions: Dict[str, _SessionState] = {}
        self._lock = threading.Lock()

        # Background writer
        self._queue: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()
        self._writer: Optional[threading.Thread] = None

    def begin(self) -> str:
        """Open a new logging session and return its id."""
        session_id = str(uuid.uuid4())
        with self._lock:
            self._sessions[session_id] = _SessionState(started_at=_utcnow())
        logger.debug("Began logging session %s", session_id)
        return session_id

    def log(
        self,
        session_id: str,
        provider: Provider,
        attempt_number: int,
        outcome: QueryOutcome,
    ) -> None:
        """Queue one attempt record for a session. Never blocks on a sink."""
        record = {
            "record_type": "attempt",
            "session_id": session_id,
            "provider": provider.value,
            "attempt_number": attempt_number,
            "outcome": "success" if outcome.success else "failure",
            "error_kind": outcome.error_kind.value if outcome.error_kind else None,
            "latency_ms": outcome.latency_ms,
            "tokens": outcome.total_tokens or None,
            "timestamp": _utcnow().isoformat(),
        }

        with self._lock:
            state = self._sessions.get(session_id)
            if state is None:
                self._warn(f"Attempt logged for unknown session {session_id}")
                return
            state.attempts += 1
            counts = state.providers.setdefault(
                provider.value, {"attempts": 0, "successes": 0, "failures": 0}
            )
            counts["attempts"] += 1
            if outcome.success:
                state.successes += 1
                counts["successes"] += 1
            else:
                state.failures += 1
                counts["failures"] += 1
            # Enqueued under the lock so write order matches counting order.
            self._enqueue(record)

    def end(self, session_id: str) -> Dict[str, Any]:
        """
        Close a session, write its summary record and wait for the writes.

        Returns:
            The summary record (also returned when every sink failed)

        Raises:
            KeyError: If the session was never begun or already ended
        """
        with self._lock:
            state = self._sessions.pop(session_id)
            ended_at = _utcnow()
            record = {
                "record_type": "session_summary",
                "session_id": session_id,
                "started_at": state.started_at.isoformat(),
                "ended_at": ended_at.isoformat(),
                "duration_ms": int((ended_at - state.started_at).total_seconds() * 1000),
                "attempts": state.attempts,
                "successes": state.successes,
                "failures": state.failures,
                "providers": {name: dict(c) for name, c in state.providers.items()},
                "timestamp": ended_at.isoformat(),
            }
            self._enqueue(record)
            idle = not self._sessions

        self.flush()
        if idle:
            self.shutdown()
        logger.debug("Ended logging session %s", session_id)
        return record

    def is_open(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def flush(self) -> None:
        """Block until every queued record has reached the sinks."""
        if self._writer is not None:
            self._queue.join()

    def shutdown(self) -> None:
        """Flush and stop the writer thread; a later record restarts it."""
        with self._lock:
            writer = self._writer
            if writer is None:
                return
            self._queue.put(None)
            writer.join(timeout=5.0)
            self._writer = None

    def _enqueue(self, record: Dict[str, Any]) -> None:
        # Caller holds self._lock.
        if not self.sinks:
            return
        if self._writer is None:
            self._writer = threading.Thread(
                target=self._write_loop,
                name="chatdelta-session-log",
                daemon=True,
            )
            self._writer.start()
        self._queue.put(record)

    def _write_loop(self) -> None:
        while True:
            record = self._queue.get()
            try:
                if record is None:
                    return
                self._emit(record)
            finally:
                self._queue.task_done()

    def _emit(self, record: Dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                sink.write(record)
            except Exception as exc:  # noqa: BLE001 - logging never fails a query
                self._warn(f"{type(sink).__name__} write failed: {exc}")

    def _warn(self, message: str) -> None:
        self.warnings.append(LoggingWarning(message))
        logger.warning(message)


# ---------------------------------------------------------------------------
# Log directory statistics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LogStats:
    """File count, total size and age range of a log directory."""

    total_files: int = 0
    total_size_bytes: int = 0
    oldest_log: Optional[datetime] = None
    newest_log: Optional[datetime] = None

    def size_human_readable(self) -> str:
        units = ("B", "KB", "MB", "GB")
        size = float(self.total_size_bytes)
        index = 0
        while size >= 1024.0 and index < len(units) - 1:
            size /= 1024.0
            index += 1
        return f"{size:.2f} {units[index]}"


def log_stats(log_dir: Union[str, Path, None] = None) -> LogStats:
    """Summarize the ``.jsonl`` files in a log directory (empty if missing)."""
    directory = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    if not directory.is_dir():
        return LogStats()

    files = [p for p in directory.glob("*.jsonl") if p.is_file()]
    if not files:
        return LogStats()

    stats = [p.stat() for p in files]
    mtimes = [datetime.fromtimestamp(s.st_mtime, tz=timezone.utc) for s in stats]
    return LogStats(
        total_files=len(files),
        total_size_bytes=sum(s.st_size for s in stats),
        oldest_log=min(mtimes),
        newest_log=max(mtimes),
    )
