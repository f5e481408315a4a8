"""
Folder Index

Per-account registry built during one run: the folders known to exist, and for
each folder the set of MessageIdentity values seen so far. The index is shared
by every worker of a pass; each folder's set is created once and handed out by
reference, so all workers mutate the same backing set.
"""

from __future__ import annotations

import threading

from sync_stats import AtomicCounter, ErrorLog


class MessageSet:
    """Set of identities, safe for concurrent use.

    ``add`` is an atomic insert-if-absent: exactly one of several workers
    inserting an equal identity gets True back. ``discard`` only undoes a
    claim whose transfer failed.
    """

    def __init__(self):
        self._items = set()
        self._lock = threading.Lock()

    def add(self, identity) -> bool:
        with self._lock:
            if identity in self._items:
                return False
            self._items.add(identity)
            return True

    def discard(self, identity) -> None:
        with self._lock:
            self._items.discard(identity)

    def __contains__(self, identity) -> bool:
        with self._lock:
            return identity in self._items

    def __len__(self):
        with self._lock:
            return len(self._items)

    def __iter__(self):
        with self._lock:
            snapshot = list(self._items)
        return iter(snapshot)

    def __repr__(self):
        return f"MessageSet({len(self)} identities)"


class FolderIndex:
    def __init__(self, name: str = "index"):
        self.name = name
        self.separator: str | None = None
        self._folders: set[str] = set()
        self._messages: dict[str, MessageSet] = {}
        self._lock = threading.Lock()
        self._errors = ErrorLog()
        self.indexed = AtomicCounter()
        self.skipped = AtomicCounter()
        self.processed = AtomicCounter()

    def set_separator(self, separator: str | None) -> None:
        self.separator = separator

    def add_folder(self, name: str) -> None:
        with self._lock:
            self._folders.add(name)

    def contains_folder(self, name: str) -> bool:
        with self._lock:
            return name in self._folders

    def folders(self) -> list[str]:
        """Sorted snapshot of the registered folder names."""
        with self._lock:
            return sorted(self._folders)

    def folder_messages(self, name: str) -> MessageSet:
        """Return the identity set of a folder, creating it on first access."""
        with self._lock:
            messages = self._messages.get(name)
            if messages is None:
                messages = MessageSet()
                self._messages[name] = messages
            return messages

    def add_crawl_error(self, error: Exception) -> None:
        self._errors.add(error)

    def has_crawl_error(self) -> bool:
        return self._errors.has_errors()

    def crawl_errors(self) -> tuple[Exception, ...]:
        return self._errors.snapshot()

    def increment_indexed(self, count: int = 1) -> None:
        self.indexed.add(count)
        self.processed.add(count)

    def increment_skipped(self, count: int = 1) -> None:
        self.skipped.add(count)
        self.processed.add(count)

    def summary_lines(self) -> list[str]:
        return [
            f"Folders         : {len(self.folders())}",
            f"Messages indexed: {self.indexed.value}",
            f"Messages skipped: {self.skipped.value}",
            f"Errors          : {len(self._errors)}",
        ]

    def __repr__(self):
        return f"FolderIndex({self.name!r}, folders={len(self.folders())}, indexed={self.indexed.value})"
