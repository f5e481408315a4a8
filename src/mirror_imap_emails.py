"""
IMAP Mirror Script

Mirrors the folder tree and messages of a source IMAP account onto a destination
account, one way. Running it again only transfers what is still missing.

Messages are matched by a fingerprint rebuilt from normalized headers
(Message-ID, From/Sender and To addresses, Subject) instead of the raw
Message-ID, so servers that drop, duplicate or reformat headers still compare
equal. The two servers may use different hierarchy separators.

Stages:
  1. Crawl source (only with --dest-delete)
  2. Crawl destination
  3. Copy: create missing folders, append missing messages (flags and
     internal date preserved)
  4. Delete (only with --dest-delete): remove destination messages that are
     not in the matching source folder. Skipped whenever the copy recorded
     any error, since an incomplete copy cannot justify pruning.

Configuration (Environment Variables):
  Source Account:
    SRC_IMAP_HOST       : Source IMAP Host (imap.example.com, imaps://host:993, imap://host:143)
    SRC_IMAP_USERNAME   : Source Username/Email
    SRC_IMAP_PASSWORD   : Source Password (or App Password)

    OAuth2 (Optional - instead of password):
    SRC_OAUTH2_CLIENT_ID     : OAuth2 Client ID
    SRC_OAUTH2_CLIENT_SECRET : OAuth2 Client Secret (required for Google)

  Destination Account:
    DEST_IMAP_HOST      : Destination IMAP Host
    DEST_IMAP_USERNAME  : Destination Username/Email
    DEST_IMAP_PASSWORD  : Destination Password

    OAuth2 (Optional - instead of password):
    DEST_OAUTH2_CLIENT_ID     : OAuth2 Client ID
    DEST_OAUTH2_CLIENT_SECRET : OAuth2 Client Secret (required for Google)

  Options:
    DEST_DELETE         : Set to "true" to delete emails from destination not found in source.
    MAX_WORKERS         : Number of concurrent threads (default: 10).
    BATCH_SIZE          : Number of messages per batch (default: 50).
    FOLDER_MAP          : Folder renames, "Source/Path=Target/Path;Other=Else" ("/" between segments).

Usage Example:
    python3 mirror_imap_emails.py \
        --src-host "imap.example.com" \
        --src-user "source@example.com" \
        --src-pass "SOURCE_PASSWORD" \
        --dest-host "imap.other.com" \
        --dest-user "dest@example.com" \
        --dest-pass "DEST_PASSWORD"

    # Exact mirror: also delete destination messages missing from the source
    python3 mirror_imap_emails.py --dest-delete --folder-map "Sent Items=Sent" ...
"""

import argparse
import os
import sys

import imap_oauth2
import imap_session
import store_copier
import store_crawler
import store_deleter
from folder_index import FolderIndex
from folder_names import FolderNameTranslator, parse_folder_map
from imap_common import safe_print
from mail_store import ImapStore, StoreError
from store_copier import FatalStructureError

MAX_WORKERS = 10
BATCH_SIZE = 50

EXIT_OK = 0
EXIT_FAILURE = 1


def crawl(store, max_workers=MAX_WORKERS, batch_size=BATCH_SIZE):
    """Index every folder and message of a store."""
    return store_crawler.populate(store, FolderIndex(store.label), max_workers=max_workers, batch_size=batch_size)


def copy(
    source_store,
    source_index,
    target_store,
    target_index,
    translator=None,
    max_workers=MAX_WORKERS,
    batch_size=BATCH_SIZE,
):
    return store_copier.copy(
        source_store,
        source_index,
        target_store,
        target_index,
        translator=translator,
        max_workers=max_workers,
        batch_size=batch_size,
    )


def delete(target_store, source_index, target_index, translator=None, max_workers=MAX_WORKERS, batch_size=BATCH_SIZE):
    return store_deleter.delete(
        target_store,
        source_index,
        target_index,
        translator=translator,
        max_workers=max_workers,
        batch_size=batch_size,
    )


def _print_summary(title, lines):
    safe_print(f"--- {title} ---")
    for line in lines:
        safe_print(f"  {line}")


def _print_errors(title, errors):
    safe_print(f"{title}: {len(errors)} error(s)")
    for error in errors:
        safe_print(f"  - {error}")


def _crawl_or_fail(store, max_workers, batch_size):
    safe_print(f"Crawling {store.label}...")
    index = crawl(store, max_workers, batch_size)
    _print_summary(f"Crawl {store.label}", index.summary_lines())
    if index.has_crawl_error():
        _print_errors(f"Crawl of {store.label} failed", index.crawl_errors())
        return None
    return index


def run_sync(
    source_store,
    target_store,
    dest_delete=False,
    max_workers=MAX_WORKERS,
    batch_size=BATCH_SIZE,
    folder_map=None,
):
    """Run crawl, copy and optional delete stages in order.

    Returns the process exit code.
    """
    try:
        source_index = None
        if dest_delete:
            source_index = _crawl_or_fail(source_store, max_workers, batch_size)
            if source_index is None:
                return EXIT_FAILURE

        target_index = _crawl_or_fail(target_store, max_workers, batch_size)
        if target_index is None:
            return EXIT_FAILURE

        translator = FolderNameTranslator(source_store.separator(), target_index.separator, folder_map)
        safe_print(f"Folder names: {translator}")

        safe_print("Copying messages...")
        try:
            copy_stats = copy(source_store, source_index, target_store, target_index, translator, max_workers, batch_size)
        except FatalStructureError as e:
            safe_print(f"Error: {e}")
            safe_print("Aborting: the destination folder structure could not be mirrored.")
            return EXIT_FAILURE
        _print_summary("Copy", copy_stats.summary_lines())

        if copy_stats.has_errors():
            _print_errors("Copy", copy_stats.errors.snapshot())
            if dest_delete:
                safe_print("Refusing to delete from destination: the copy did not complete cleanly.")
            return EXIT_FAILURE

        if dest_delete:
            safe_print("Deleting destination messages not found on source...")
            delete_stats = delete(target_store, source_index, target_index, translator, max_workers, batch_size)
            _print_summary("Delete", delete_stats.summary_lines())
            if delete_stats.has_errors():
                _print_errors("Delete", delete_stats.errors.snapshot())
                return EXIT_FAILURE
    except StoreError as e:
        safe_print(f"Error: {e}")
        return EXIT_FAILURE

    safe_print("Mirror completed.")
    return EXIT_OK


def _env_folder_map():
    value = os.getenv("FOLDER_MAP")
    return [value] if value else []


def main():
    parser = argparse.ArgumentParser(description="Mirror folders and messages from one IMAP account to another.")

    # Source args
    default_src_host = os.getenv("SRC_IMAP_HOST")
    default_src_user = os.getenv("SRC_IMAP_USERNAME")
    default_src_pass = os.getenv("SRC_IMAP_PASSWORD")
    default_src_client_id = os.getenv("SRC_OAUTH2_CLIENT_ID")

    parser.add_argument(
        "--src-host",
        default=default_src_host,
        required=not bool(default_src_host),
        help="Source IMAP Host (or SRC_IMAP_HOST)",
    )
    parser.add_argument(
        "--src-user",
        default=default_src_user,
        required=not bool(default_src_user),
        help="Source Username (or SRC_IMAP_USERNAME)",
    )
    src_auth = parser.add_mutually_exclusive_group(required=not bool(default_src_pass or default_src_client_id))
    src_auth.add_argument("--src-pass", default=default_src_pass, help="Source Password (or SRC_IMAP_PASSWORD)")
    src_auth.add_argument(
        "--src-oauth2-client-id",
        default=default_src_client_id,
        dest="src_client_id",
        help="Source OAuth2 Client ID (or SRC_OAUTH2_CLIENT_ID)",
    )
    parser.add_argument(
        "--src-oauth2-client-secret",
        default=os.getenv("SRC_OAUTH2_CLIENT_SECRET"),
        dest="src_client_secret",
        help="Source OAuth2 Client Secret (if required) (or SRC_OAUTH2_CLIENT_SECRET)",
    )

    # Dest args
    default_dest_host = os.getenv("DEST_IMAP_HOST")
    default_dest_user = os.getenv("DEST_IMAP_USERNAME")
    default_dest_pass = os.getenv("DEST_IMAP_PASSWORD")
    default_dest_client_id = os.getenv("DEST_OAUTH2_CLIENT_ID")

    parser.add_argument(
        "--dest-host",
        default=default_dest_host,
        required=not bool(default_dest_host),
        help="Destination IMAP Host (or DEST_IMAP_HOST)",
    )
    parser.add_argument(
        "--dest-user",
        default=default_dest_user,
        required=not bool(default_dest_user),
        help="Destination Username (or DEST_IMAP_USERNAME)",
    )
    dest_auth = parser.add_mutually_exclusive_group(required=not bool(default_dest_pass or default_dest_client_id))
    dest_auth.add_argument(
        "--dest-pass",
        default=default_dest_pass,
        help="Destination Password (or DEST_IMAP_PASSWORD)",
    )
    dest_auth.add_argument(
        "--dest-oauth2-client-id",
        default=default_dest_client_id,
        dest="dest_client_id",
        help="Destination OAuth2 Client ID (or DEST_OAUTH2_CLIENT_ID)",
    )
    parser.add_argument(
        "--dest-oauth2-client-secret",
        default=os.getenv("DEST_OAUTH2_CLIENT_SECRET"),
        dest="dest_client_secret",
        help="Destination OAuth2 Client Secret (if required) (or DEST_OAUTH2_CLIENT_SECRET)",
    )

    # Options
    env_dest_delete = os.getenv("DEST_DELETE", "false").lower() == "true"
    parser.add_argument(
        "--dest-delete",
        action="store_true",
        default=env_dest_delete,
        help="Delete emails from destination that don't exist in source (exact mirror)",
    )
    parser.add_argument(
        "--workers", type=int, default=int(os.getenv("MAX_WORKERS", MAX_WORKERS)), help="Number of concurrent threads"
    )
    parser.add_argument(
        "--batch", type=int, default=int(os.getenv("BATCH_SIZE", BATCH_SIZE)), help="Messages per batch"
    )
    parser.add_argument(
        "--folder-map",
        action="append",
        default=None,
        metavar="SOURCE=TARGET",
        help="Rename a source folder (and its sub-folders) on the destination; repeatable (or FOLDER_MAP)",
    )

    args = parser.parse_args()

    if args.workers < 1 or args.batch < 1:
        parser.error("--workers and --batch must be positive")
    try:
        folder_map = parse_folder_map(args.folder_map if args.folder_map is not None else _env_folder_map())
    except ValueError as e:
        parser.error(str(e))

    src_conf = imap_session.build_imap_conf(
        args.src_host, args.src_user, args.src_pass, args.src_client_id, args.src_client_secret, "source"
    )
    dest_conf = imap_session.build_imap_conf(
        args.dest_host, args.dest_user, args.dest_pass, args.dest_client_id, args.dest_client_secret, "destination"
    )

    print("\n--- Configuration Summary ---")
    print(f"Source Host     : {args.src_host}")
    print(f"Source User     : {args.src_user}")
    print(f"Source Auth     : {imap_oauth2.auth_description((src_conf['oauth2'] or {}).get('provider'))}")
    print(f"Destination Host: {args.dest_host}")
    print(f"Destination User: {args.dest_user}")
    print(f"Destination Auth: {imap_oauth2.auth_description((dest_conf['oauth2'] or {}).get('provider'))}")
    print(f"Dest Delete     : {args.dest_delete}")
    print(f"Workers         : {args.workers}")
    print(f"Batch Size      : {args.batch}")
    if folder_map:
        print(f"Folder Map      : {'; '.join(f'{k} -> {v}' for k, v in folder_map.items())}")
    print("-----------------------------\n")

    with ImapStore(src_conf, "source") as source_store, ImapStore(dest_conf, "destination") as target_store:
        return run_sync(
            source_store,
            target_store,
            dest_delete=args.dest_delete,
            max_workers=args.workers,
            batch_size=args.batch,
            folder_map=folder_map,
        )


if __name__ == "__main__":
    sys.exit(main())
