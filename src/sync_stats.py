"""
Sync Statistics

Thread-safe counters and error logs shared by the workers of one pass
(crawl, copy or delete). One instance is created per pass and handed to every
worker, so concurrent runs never share state.
"""

from __future__ import annotations

import threading


class AtomicCounter:
    """Monotonically increasing integer, safe to bump from many threads."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def add(self, delta: int = 1) -> int:
        if delta < 0:
            raise ValueError(f"delta must be >= 0, got {delta}")
        with self._lock:
            self._value += delta
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def __repr__(self):
        return f"AtomicCounter({self.value})"


class ErrorLog:
    """Append-only collection of exceptions recorded by workers."""

    def __init__(self):
        self._errors: list[Exception] = []
        self._lock = threading.Lock()

    def add(self, error: Exception) -> None:
        with self._lock:
            self._errors.append(error)

    def has_errors(self) -> bool:
        with self._lock:
            return bool(self._errors)

    def snapshot(self) -> tuple[Exception, ...]:
        with self._lock:
            return tuple(self._errors)

    def __len__(self):
        with self._lock:
            return len(self._errors)


class SyncStats:
    """Aggregate counters and recorded errors for a copy or delete pass."""

    def __init__(self, name: str):
        self.name = name
        self.folders_created = AtomicCounter()
        self.folders_skipped = AtomicCounter()
        self.messages_copied = AtomicCounter()
        self.messages_skipped = AtomicCounter()
        self.messages_deleted = AtomicCounter()
        self.errors = ErrorLog()

    def add_error(self, error: Exception) -> None:
        self.errors.add(error)

    def has_errors(self) -> bool:
        return self.errors.has_errors()

    def summary_lines(self) -> list[str]:
        """Lines for the end-of-pass report."""
        lines = [
            f"Folders created : {self.folders_created.value}",
            f"Folders skipped : {self.folders_skipped.value}",
            f"Messages copied : {self.messages_copied.value}",
            f"Messages deleted: {self.messages_deleted.value}",
            f"Messages skipped: {self.messages_skipped.value}",
            f"Errors          : {len(self.errors)}",
        ]
        return lines
