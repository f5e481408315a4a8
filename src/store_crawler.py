"""
Store Crawler

Read-only pass that fills a FolderIndex with the identity of every message of
a store. Folders are walked parent-before-child; each folder that holds
messages is cut into fixed-size sequence ranges, one pool task per range.

A batch that hits a store failure records it in the index and stops; sibling
batches and the folder walk carry on. Callers must check has_crawl_error()
afterwards and treat any recorded error as fatal for the run.
"""

from __future__ import annotations

import concurrent.futures

import batch_pool
import message_identity
from folder_index import FolderIndex
from imap_common import safe_print
from mail_store import HOLDS_MESSAGES, PROFILE_HEADERS, READ_ONLY, StoreError, walk_folders
from message_identity import IdentityError

BATCH_SIZE = 50
MAX_WORKERS = 10
CRAWL_TIMEOUT = 60 * 60  # seconds


def crawl_batch(store, index, folder_name, start, end):
    """Index messages start..end of one folder."""
    folder = store.get_folder(folder_name)
    identities = index.folder_messages(folder_name)
    try:
        folder.open(READ_ONLY)
        try:
            messages = folder.fetch(start, end, PROFILE_HEADERS)
        finally:
            folder.close()

        for message in messages:
            try:
                identity = message_identity.derive(message)
            except IdentityError as e:
                if e.cause is not None:
                    raise StoreError(f"{e}: {e.cause}", folder=folder_name, command="FETCH") from e
                index.increment_skipped()
                continue
            if identities.add(identity):
                index.increment_indexed()
            else:
                index.increment_skipped()
    except StoreError as e:
        safe_print(f"[{folder_name}] Crawl of messages {start}-{end} failed: {e}")
        index.add_crawl_error(e)


def populate(store, index=None, max_workers=MAX_WORKERS, batch_size=BATCH_SIZE, timeout=CRAWL_TIMEOUT):
    """Crawl every folder of ``store`` into ``index`` (a new one when None).

    Raises StoreError only when the store cannot be reached at all; every
    per-folder or per-batch failure is recorded in the index instead.
    """
    if index is None:
        index = FolderIndex(store.label)
    store.connection(check=True)
    index.set_separator(store.separator())

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)
    futures = []
    try:
        for folder in walk_folders(store, on_error=index.add_crawl_error):
            name = folder.full_name
            if not index.contains_folder(name):
                index.add_folder(name)
            if not folder.type & HOLDS_MESSAGES:
                continue

            try:
                count = folder.open(READ_ONLY)
                folder.close()
            except StoreError as e:
                safe_print(f"[{name}] Could not open folder: {e}")
                index.add_crawl_error(e)
                continue

            index.folder_messages(name)
            batches = batch_pool.batch_ranges(count, batch_size)
            safe_print(f"[{name}] Crawling {count} messages in {len(batches)} batches")
            for start, end in batches:
                futures.append(executor.submit(crawl_batch, store, index, name, start, end))
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise

    batch_pool.drain(executor, futures, timeout, index.add_crawl_error, f"Crawl of {store.label}")
    store.release_idle_connections()
    return index
