"""
Batch Pool Helpers

Splitting folders into batches and draining the worker pool of a pass.
"""

from __future__ import annotations

import concurrent.futures

from imap_common import safe_print


def batch_ranges(count: int, size: int) -> list[tuple[int, int]]:
    """Split sequence numbers 1..count into disjoint inclusive (start, end) ranges."""
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    return [(start, min(start + size - 1, count)) for start in range(1, count + 1, size)]


def chunked(items, size: int) -> list[list]:
    if size < 1:
        raise ValueError(f"batch size must be >= 1, got {size}")
    items = list(items)
    return [items[i : i + size] for i in range(0, len(items), size)]


def drain(executor, futures, timeout, on_error, label: str) -> bool:
    """Wait for every submitted batch, then shut the pool down.

    Exceptions escaping a batch are reported to ``on_error``. When the pool
    does not finish within ``timeout`` seconds a TimeoutError is reported,
    pending batches are cancelled and False is returned.
    """
    try:
        done, not_done = concurrent.futures.wait(futures, timeout=timeout)
    except KeyboardInterrupt:
        safe_print(f"\n\n!!! {label} interrupted by user. Shutting down threads... !!!\n")
        executor.shutdown(wait=False, cancel_futures=True)
        raise

    if not_done:
        error = TimeoutError(f"{label}: {len(not_done)} batches did not finish within {timeout}s")
        safe_print(f"Error: {error}")
        on_error(error)
        executor.shutdown(wait=False, cancel_futures=True)
    else:
        executor.shutdown(wait=True)

    for future in done:
        if future.cancelled():
            continue
        exc = future.exception()
        if exc is not None:
            safe_print(f"{label} batch error: {exc!r}")
            on_error(exc)
    return not not_done
