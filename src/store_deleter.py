"""
Store Deleter

Delete pass on the target store: every message of a mirrored target folder
whose identity is absent from the corresponding source folder is flagged
\\Deleted, and each batch expunges on close.

Batches are planned over UIDs, not sequence numbers, because every batch
expunges when it finishes and the numbering of its siblings would shift.
Target folders without a known source counterpart are never touched.
"""

from __future__ import annotations

import concurrent.futures

import batch_pool
import message_identity
from folder_names import FolderNameTranslator
from imap_common import safe_print
from mail_store import HOLDS_MESSAGES, PROFILE_HEADERS, READ_WRITE, StoreError
from message_identity import IdentityError
from sync_stats import SyncStats

BATCH_SIZE = 50
MAX_WORKERS = 10
DELETE_TIMEOUT = 24 * 60 * 60  # seconds


def delete_batch(target_store, stats, source_messages, folder_name, uids):
    folder = target_store.get_folder(folder_name)
    deleted = 0
    try:
        folder.open(READ_WRITE)
        try:
            for message in folder.fetch_uids(uids, PROFILE_HEADERS):
                try:
                    identity = message_identity.derive(message)
                except IdentityError as e:
                    if e.cause is not None:
                        raise StoreError(f"{e}: {e.cause}", folder=folder_name, command="UID FETCH") from e
                    stats.messages_skipped.add()
                    continue

                if identity in source_messages:
                    stats.messages_skipped.add()
                    continue
                folder.set_deleted(message)
                deleted += 1
                stats.messages_deleted.add()
        finally:
            folder.close(expunge=deleted > 0)
        if deleted:
            safe_print(f"[{folder_name}] Deleted {deleted} messages not found on source")
    except StoreError as e:
        safe_print(f"[{folder_name}] Delete batch failed: {e}")
        stats.add_error(e)


def delete(
    target_store,
    source_index,
    target_index,
    translator=None,
    max_workers=MAX_WORKERS,
    batch_size=BATCH_SIZE,
    timeout=DELETE_TIMEOUT,
):
    """Remove target messages that do not exist in the matching source folder.

    Returns the pass SyncStats.
    """
    stats = SyncStats("delete")
    target_store.connection(check=True)
    if translator is None:
        translator = FolderNameTranslator(source_index.separator, target_index.separator)

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)
    futures = []
    try:
        for target_name in target_index.folders():
            try:
                source_name = translator.to_source(target_name)
            except ValueError as e:
                safe_print(f"[{target_name}] No source counterpart: {e}")
                stats.folders_skipped.add()
                continue
            if not source_index.contains_folder(source_name):
                safe_print(f"[{target_name}] Not mirrored from source, leaving it untouched")
                stats.folders_skipped.add()
                continue

            folder = target_store.get_folder(target_name)
            try:
                if not folder.type & HOLDS_MESSAGES:
                    continue
                folder.open(READ_WRITE)
                try:
                    uids = folder.message_uids()
                finally:
                    folder.close()
            except StoreError as e:
                safe_print(f"[{target_name}] Could not open folder: {e}")
                stats.add_error(e)
                continue

            if not uids:
                safe_print(f"[{target_name}] Empty, nothing to delete")
                continue

            source_messages = source_index.folder_messages(source_name)
            batches = batch_pool.chunked(uids, batch_size)
            safe_print(f"[{target_name}] Checking {len(uids)} messages in {len(batches)} batches")
            for batch in batches:
                futures.append(executor.submit(delete_batch, target_store, stats, source_messages, target_name, batch))
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise

    batch_pool.drain(executor, futures, timeout, stats.add_error, "Delete")
    target_store.release_idle_connections()
    return stats
