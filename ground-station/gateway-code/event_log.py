"""Bounded error/event log shared by every gateway component.

Entries are kept in insertion order; the oldest entry is evicted once the
log holds ``max_entries``. Each record is mirrored to the ``logging`` module
and pushed to subscribers (TUI panel, WebSocket console).
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from typing import Callable, Optional, Union

from constants import ERROR_LOG_SIZE
from pod_state import ErrorLogEntry, Severity

logger = logging.getLogger(__name__)

_LEVELS = {
    Severity.ERROR: logging.ERROR,
    Severity.WARNING: logging.WARNING,
    Severity.INFO: logging.INFO,
}


class ErrorLog:
    """Append-only ring buffer of ErrorLogEntry."""

    def __init__(self, max_entries: int = ERROR_LOG_SIZE, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: deque[ErrorLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._listeners: list[Callable[[ErrorLogEntry], None]] = []

    def record(self, message: str, severity: Union[Severity, str] = Severity.ERROR,
               kind: Optional[str] = None) -> ErrorLogEntry:
        """Append a timestamped, uniquely identified entry and notify listeners."""
        entry = ErrorLogEntry(
            id=uuid.uuid4().hex,
            timestamp=self._clock(),
            message=message,
            severity=Severity(severity),
            kind=kind,
        )
        with self._lock:
            self._entries.append(entry)
        logger.log(_LEVELS[entry.severity], "%s%s",
                   f"[{kind}] " if kind else "", message)
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("Error log listener failed")
        return entry

    def error(self, message: str, kind: Optional[str] = None) -> ErrorLogEntry:
        return self.record(message, Severity.ERROR, kind)

    def warning(self, message: str, kind: Optional[str] = None) -> ErrorLogEntry:
        return self.record(message, Severity.WARNING, kind)

    def info(self, message: str, kind: Optional[str] = None) -> ErrorLogEntry:
        return self.record(message, Severity.INFO, kind)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def entries(self) -> list[ErrorLogEntry]:
        """Snapshot of all entries, oldest first."""
        with self._lock:
            return list(self._entries)

    def by_kind(self, kind: str) -> list[ErrorLogEntry]:
        return [e for e in self.entries() if e.kind == kind]

    def subscribe(self, listener: Callable[[ErrorLogEntry], None]):
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[ErrorLogEntry], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
