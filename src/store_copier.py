"""
Store Copier

Copy pass from a source store to a target store.

Phase A mirrors the folder tree: every source folder gets a target folder under
its translated name. A target folder that cannot be created aborts the whole
pass with FatalStructureError.

Phase B transfers messages: every source folder that holds messages is cut into
fixed-size sequence ranges, one pool task per range. A task derives the
identity of each message in its range, skips those already present in the
target folder's identity set and appends the rest, keeping flags and internal
date. A store failure aborts the batch and is recorded in the pass statistics;
any recorded error means the target must not be pruned afterwards.
"""

from __future__ import annotations

import concurrent.futures

import batch_pool
import message_identity
from folder_names import FolderNameTranslator
from imap_common import safe_print
from mail_store import (
    HOLDS_MESSAGES,
    PROFILE_FULL,
    PROFILE_HEADERS,
    READ_ONLY,
    READ_WRITE,
    ReadOnlyFolderError,
    StoreError,
    walk_folders,
)
from message_identity import IdentityError
from sync_stats import SyncStats

BATCH_SIZE = 50
MAX_WORKERS = 10
COPY_TIMEOUT = 24 * 60 * 60  # seconds
UPDATE_COUNT = 20  # progress report every N copied messages


class FatalStructureError(Exception):
    """A target folder could not be created; nothing can be copied safely."""

    def __init__(self, folder_name, cause):
        super().__init__(f"Could not create target folder '{folder_name}': {cause}")
        self.folder_name = folder_name
        self.cause = cause


class CopyContext:
    """Run-scoped state shared by every task of one copy pass."""

    def __init__(self, source_store, source_index, target_store, target_index, stats):
        self.source_store = source_store
        self.source_index = source_index
        self.target_store = target_store
        self.target_index = target_index
        self.stats = stats

    def record_copy(self, folder_name):
        copied = self.stats.messages_copied.add()
        if copied % UPDATE_COUNT == 0:
            safe_print(f"[{folder_name}] Progress: {copied} messages copied, {self.stats.messages_skipped.value} skipped")


def open_preferring_write(folder, mode=READ_WRITE):
    """Open a source folder read-write, or read-only when the server refuses writes."""
    if mode == READ_WRITE:
        try:
            return folder.open(READ_WRITE), READ_WRITE
        except ReadOnlyFolderError:
            safe_print(f"[{folder.full_name}] Read-write access denied, falling back to read-only")
    return folder.open(READ_ONLY), READ_ONLY


def target_name_for(translator, source_name):
    """Translate a source folder name, or fail the pass when the target cannot hold it."""
    try:
        return translator.to_target(source_name)
    except ValueError as e:
        raise FatalStructureError(source_name, e) from e


def create_folders(source_store, source_index, target_store, target_index, translator, stats):
    """Phase A: make sure every source folder exists on the target."""
    for folder in walk_folders(source_store, on_error=stats.add_error):
        source_name = folder.full_name
        target_name = target_name_for(translator, source_name)
        if source_index is not None:
            source_index.add_folder(source_name)

        if target_index.contains_folder(target_name):
            stats.folders_skipped.add()
            continue

        target_folder = target_store.get_folder(target_name)
        try:
            if target_folder.exists():
                stats.folders_skipped.add()
            else:
                target_folder.create(folder.type)
                stats.folders_created.add()
                safe_print(f"[{target_name}] Created folder (from '{source_name}')")
        except StoreError as e:
            raise FatalStructureError(target_name, e) from e
        target_index.add_folder(target_name)


def copy_batch(ctx, source_name, target_name, start, end, mode):
    """Copy messages start..end of one source folder."""
    source_folder = ctx.source_store.get_folder(source_name)
    target_messages = ctx.target_index.folder_messages(target_name)
    source_messages = ctx.source_index.folder_messages(source_name) if ctx.source_index is not None else None
    try:
        queued = []
        fetched = []
        open_preferring_write(source_folder, mode)
        try:
            for message in source_folder.fetch(start, end, PROFILE_HEADERS):
                try:
                    identity = message_identity.derive(message)
                except IdentityError as e:
                    if e.cause is not None:
                        raise StoreError(f"{e}: {e.cause}", folder=source_name, command="FETCH") from e
                    safe_print(f"[{source_name}] Skipping message {message.seq}: {e}")
                    ctx.stats.messages_skipped.add()
                    continue

                if source_messages is not None:
                    if source_messages.add(identity):
                        ctx.source_index.increment_indexed()
                    else:
                        ctx.source_index.increment_skipped()

                if identity in target_messages:
                    ctx.stats.messages_skipped.add()
                else:
                    queued.append((message.uid, identity))

            if queued:
                fetched = source_folder.fetch_uids([uid for uid, _ in queued], PROFILE_FULL)
        finally:
            source_folder.close()

        if queued:
            append_queued(ctx, source_name, target_name, queued, fetched)
    except StoreError as e:
        safe_print(f"[{source_name}] Copy of messages {start}-{end} failed: {e}")
        ctx.stats.add_error(e)


def append_queued(ctx, source_name, target_name, queued, fetched):
    by_uid = {message.uid: message for message in fetched}
    target_messages = ctx.target_index.folder_messages(target_name)
    target_folder = ctx.target_store.get_folder(target_name)
    target_folder.open(READ_WRITE)
    try:
        for uid, identity in queued:
            message = by_uid.get(uid)
            if message is None or message.content is None:
                safe_print(f"[{source_name}] Message UID {uid} disappeared before it could be copied")
                ctx.stats.messages_skipped.add()
                continue
            # Claim the identity first so a concurrent batch holding an equal
            # message skips it instead of appending a second copy
            if not target_messages.add(identity):
                ctx.stats.messages_skipped.add()
                continue
            try:
                target_folder.append(message)
            except StoreError as e:
                # Release the claim so an equal message in a later batch is still copied
                target_messages.discard(identity)
                raise StoreError(f"Append of {identity!r} failed: {e.args[0]}", target_name, "APPEND") from e
            ctx.record_copy(target_name)
    finally:
        target_folder.close()


def copy(
    source_store,
    source_index,
    target_store,
    target_index,
    translator=None,
    max_workers=MAX_WORKERS,
    batch_size=BATCH_SIZE,
    timeout=COPY_TIMEOUT,
):
    """Copy every message missing from the target.

    ``source_index`` may be None; when given (deletion requested) it receives
    every source folder and message identity seen. Returns the pass SyncStats.
    Raises FatalStructureError when the folder tree cannot be mirrored.
    """
    stats = SyncStats("copy")
    source_store.connection(check=True)
    target_store.connection(check=True)
    if translator is None:
        target_separator = target_index.separator if target_index.separator is not None else target_store.separator()
        translator = FolderNameTranslator(source_store.separator(), target_separator)
    if source_index is not None:
        source_index.set_separator(translator.source_separator)

    safe_print("Mirroring folder structure...")
    create_folders(source_store, source_index, target_store, target_index, translator, stats)

    ctx = CopyContext(source_store, source_index, target_store, target_index, stats)
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)
    futures = []
    try:
        for folder in walk_folders(source_store, on_error=stats.add_error):
            if not folder.type & HOLDS_MESSAGES:
                continue
            source_name = folder.full_name
            target_name = target_name_for(translator, source_name)
            try:
                count, mode = open_preferring_write(folder)
                folder.close()
            except StoreError as e:
                safe_print(f"[{source_name}] Could not open folder: {e}")
                stats.add_error(e)
                continue

            batches = batch_pool.batch_ranges(count, batch_size)
            safe_print(f"[{source_name}] -> [{target_name}] {count} messages in {len(batches)} batches")
            for start, end in batches:
                futures.append(executor.submit(copy_batch, ctx, source_name, target_name, start, end, mode))
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise

    batch_pool.drain(executor, futures, timeout, stats.add_error, "Copy")
    source_store.release_idle_connections()
    target_store.release_idle_connections()
    return stats
