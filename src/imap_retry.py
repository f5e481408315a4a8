"""
IMAP Retry Logic

Transparent retry wrapper for mirror connections. Servers under load (Microsoft
365 "Server Busy", Gmail throttling) answer NO for commands that succeed a few
seconds later; those answers are retried with exponential backoff, every other
answer is handed back unchanged.
"""

from __future__ import annotations

import time

from imap_common import safe_print

TRANSIENT_PATTERNS = (b"UNAVAILABLE", b"Server Busy", b"try again", b"THROTTLED")

# Commands that are safe to repeat and return (typ, data)
RETRYABLE_METHODS = frozenset(
    {
        "uid",
        "select",
        "fetch",
        "append",
        "store",
        "list",
        "create",
        "noop",
    }
)


def is_transient_response(typ, data) -> bool:
    """Return True for a non-OK response whose text names a transient condition."""
    if typ == "OK":
        return False
    for item in data or ():
        if isinstance(item, str):
            item = item.encode("utf-8", errors="replace")
        if isinstance(item, bytes) and any(pattern in item for pattern in TRANSIENT_PATTERNS):
            return True
    return False


class RetryingConnection:
    """Proxy around an imaplib connection that retries transient failures.

    Attributes that are not retryable commands are forwarded untouched, so the
    proxy can stand in for the connection everywhere.
    """

    def __init__(self, conn, max_retries=3, initial_wait=5, label=None, sleep=time.sleep):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._conn = conn
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._label = label
        self._sleep = sleep

    @property
    def wrapped(self):
        return self._conn

    def __getattr__(self, name):
        attr = getattr(self._conn, name)
        if name not in RETRYABLE_METHODS or not callable(attr):
            return attr

        def call_with_retry(*args, **kwargs):
            result = None
            for attempt in range(self._max_retries):
                result = attr(*args, **kwargs)
                if not isinstance(result, tuple) or len(result) < 2:
                    return result
                if not is_transient_response(result[0], result[1]):
                    return result
                if attempt + 1 < self._max_retries:
                    wait = self._initial_wait * (2**attempt)  # 5s, 10s, 20s
                    prefix = f"[{self._label}] " if self._label else ""
                    safe_print(
                        f"{prefix}Server busy on {name.upper()}, retrying in {wait}s... "
                        f"(attempt {attempt + 1}/{self._max_retries})"
                    )
                    self._sleep(wait)
            return result

        return call_with_retry
