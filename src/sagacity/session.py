"""Shared session state guarded by a single lock.

Every task (render tick, indexing step, chat turn) touches the state the
same way: take the lock, copy inputs or commit outputs, release.  Nothing
holds the lock across a network call.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .models import ApiCallLog, ChatMessage, Role, SummaryCache

LOG_CAPACITY = 200
API_CALL_CAPACITY = 500


class FileState(Enum):
    pending = "pending"
    running = "running"
    done = "done"
    error = "error"


@dataclass
class LogEntry:
    timestamp: float
    level: str
    message: str


class SessionState:
    """Index, conversation memory and UI-visible fields for one process."""

    def __init__(self, cache: SummaryCache | None = None, *, log_capacity: int = LOG_CAPACITY) -> None:
        self._lock = threading.Lock()
        self._cache = cache if cache is not None else SummaryCache()
        self._memory: list[ChatMessage] = []
        self._progress: dict[str, tuple[FileState, str]] = {}
        self._logs: deque[LogEntry] = deque(maxlen=log_capacity)
        self._api_calls: deque[ApiCallLog] = deque(maxlen=API_CALL_CAPACITY)
        self._scroll: dict[str, int] = {}
        self._last_answer: str = ""
        self._busy = False
        self._indexing = False

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    @property
    def cache(self) -> SummaryCache:
        """Current cache snapshot.

        Snapshots are replaced wholesale by ``commit_cache`` and never
        mutated in place, so the returned object is safe to read unlocked.
        """
        with self._lock:
            return self._cache

    def commit_cache(self, cache: SummaryCache) -> None:
        with self._lock:
            self._cache = cache

    def begin_indexing(self) -> bool:
        """Mark an indexing run as started; False if one is already running."""
        with self._lock:
            if self._indexing:
                return False
            self._indexing = True
            self._progress.clear()
            return True

    def end_indexing(self) -> None:
        with self._lock:
            self._indexing = False

    def set_progress(self, path: str, state: FileState, detail: str = "") -> None:
        with self._lock:
            self._progress[path] = (state, detail)

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def memory(self, limit: int | None = None) -> list[ChatMessage]:
        """Copy of conversation memory, keeping only the newest *limit* entries."""
        with self._lock:
            items = list(self._memory)
        if limit is not None and len(items) > limit:
            items = items[len(items) - limit:]
        return items

    def append_turn(self, question: str, answer: str) -> None:
        """Commit one user/assistant pair to memory in a single step."""
        with self._lock:
            self._memory.append(ChatMessage(role=Role.user, content=question))
            self._memory.append(ChatMessage(role=Role.assistant, content=answer))
            self._last_answer = answer

    def set_busy(self, busy: bool) -> None:
        with self._lock:
            self._busy = busy

    # ------------------------------------------------------------------
    # UI fields
    # ------------------------------------------------------------------

    def log(self, message: str, level: str = "INFO") -> None:
        with self._lock:
            self._logs.append(LogEntry(timestamp=time.time(), level=level, message=message))

    def record_call(self, entry: ApiCallLog) -> None:
        with self._lock:
            self._api_calls.append(entry)

    def api_calls(self) -> list[ApiCallLog]:
        with self._lock:
            return list(self._api_calls)

    def scroll(self, pane: str, delta: int) -> int:
        with self._lock:
            offset = max(0, self._scroll.get(pane, 0) + delta)
            self._scroll[pane] = offset
            return offset

    def snapshot(self) -> dict[str, Any]:
        """Read-only copy of everything the renderer needs."""
        with self._lock:
            return {
                "indexed_files": len(self._cache.entries),
                "watermark": self._cache.watermark,
                "indexing": self._indexing,
                "busy": self._busy,
                "progress": {
                    path: {"state": state.value, "detail": detail}
                    for path, (state, detail) in self._progress.items()
                },
                "logs": [
                    {"timestamp": e.timestamp, "level": e.level, "message": e.message}
                    for e in self._logs
                ],
                "memory": [
                    {"role": m.role.value, "content": m.content} for m in self._memory
                ],
                "last_answer": self._last_answer,
                "scroll": dict(self._scroll),
                "api_calls": len(self._api_calls),
            }


class SessionLogHandler(logging.Handler):
    """Mirror log records into the session's log ring buffer."""

    def __init__(self, state: SessionState, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._state = state

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._state.log(record.getMessage(), record.levelname)
        except Exception:
            self.handleError(record)
