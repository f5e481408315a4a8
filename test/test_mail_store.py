"""
Tests for mail_store.py

Tests cover:
- Hierarchy separator discovery and folder walking
- Folder types from LIST attributes
- Opening folders read-only, read-write and the read-only refusal
- Closing with and without expunge, with and without UNSELECT
- Header and full fetches, UID search
- Append with flags and internal date
- Folder creation
- Failures surfacing as StoreError
- Per-thread connections, liveness checks and releasing idle sessions
"""

import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

from conftest import get_free_port, make_conf, make_email
from mail_store import (
    HOLDS_FOLDERS,
    HOLDS_MESSAGES,
    PROFILE_FULL,
    PROFILE_HEADERS,
    READ_ONLY,
    READ_WRITE,
    ImapStore,
    ReadOnlyFolderError,
    StoreError,
    StoreMessage,
    walk_folders,
)


@pytest.fixture
def store_factory(single_mock_server):
    """Creates (server, ImapStore) pairs; stores are closed after the test."""
    stores = []

    def _create(initial_data=None, **options):
        server, port = single_mock_server(initial_data, **options)
        store = ImapStore(make_conf(port), "test", max_retries=1, initial_wait=0)
        stores.append(store)
        return server, store

    yield _create

    for store in stores:
        store.close()


class TestSeparator:
    @pytest.mark.parametrize("delimiter", ["/", "."])
    def test_separator(self, store_factory, delimiter):
        _, store = store_factory(delimiter=delimiter)
        assert store.separator() == delimiter

    def test_flat_namespace(self, store_factory):
        _, store = store_factory(delimiter=None)
        assert store.separator() is None


class TestWalkFolders:
    def test_parents_before_children(self, store_factory):
        _, store = store_factory({"INBOX": [], "Archive/2023": [], "Archive/2024": [], "Sent": []})

        names = [folder.full_name for folder in walk_folders(store)]

        assert names == ["Archive", "INBOX", "Sent", "Archive/2023", "Archive/2024"]

    def test_folder_types(self, store_factory):
        server, store = store_factory({"INBOX": [], "Archive/2023": [], "Leaf": []})
        server.noinferiors.add("Leaf")

        types = {folder.full_name: folder.type for folder in walk_folders(store)}

        assert types["INBOX"] == HOLDS_MESSAGES | HOLDS_FOLDERS
        assert types["Archive"] == HOLDS_FOLDERS
        assert types["Leaf"] == HOLDS_MESSAGES
        assert store.default_folder().type == HOLDS_FOLDERS

    def test_flat_namespace(self, store_factory):
        _, store = store_factory({"INBOX": [], "Sent": []}, delimiter=None)

        assert [folder.full_name for folder in walk_folders(store)] == ["INBOX", "Sent"]

    def test_folder_name_and_separator(self, store_factory):
        _, store = store_factory({"INBOX": [], "Archive/2023": []}, delimiter="/")
        folder = store.get_folder("Archive/2023")

        assert folder.separator == "/"
        assert folder.name == "2023"


class TestOpenClose:
    def test_open_read_only(self, store_factory):
        server, store = store_factory({"INBOX": [make_email(1), make_email(2)]})
        folder = store.get_folder("INBOX")

        assert folder.open(READ_ONLY) == 2
        assert folder.is_open()
        assert folder.mode() == READ_ONLY
        assert folder.message_count() == 2
        folder.close()

        assert not folder.is_open()
        assert any(cmd.startswith("EXAMINE") for cmd in server.commands)

    def test_open_missing_folder(self, store_factory):
        _, store = store_factory({"INBOX": []})
        with pytest.raises(StoreError) as excinfo:
            store.get_folder("Nope").open(READ_ONLY)
        assert excinfo.value.folder == "Nope"
        assert "EXAMINE" in str(excinfo.value)

    def test_read_write_refused(self, store_factory):
        """A server answering [READ-ONLY] to SELECT raises ReadOnlyFolderError."""
        server, store = store_factory({"INBOX": [make_email(1)]})
        server.read_only_folders.add("INBOX")
        folder = store.get_folder("INBOX")

        with pytest.raises(ReadOnlyFolderError):
            folder.open(READ_WRITE)

        assert folder.open(READ_ONLY) == 1
        folder.close()

    def test_close_with_expunge(self, store_factory):
        server, store = store_factory({"INBOX": [make_email(1), make_email(2)]})
        folder = store.get_folder("INBOX")
        folder.open(READ_WRITE)
        (message,) = folder.fetch_uids([1], PROFILE_HEADERS)
        folder.set_deleted(message)
        folder.close(expunge=True)

        assert server.contents("INBOX") == [make_email(2)]

    def test_close_without_expunge_keeps_deleted(self, store_factory):
        server, store = store_factory({"INBOX": [make_email(1)]})
        server.folders["INBOX"][0]["flags"].add("\\Deleted")
        folder = store.get_folder("INBOX")
        folder.open(READ_WRITE)
        folder.close()

        assert server.contents("INBOX") == [make_email(1)]
        assert any(cmd.startswith("UNSELECT") for cmd in server.commands)

    def test_close_without_unselect_capability(self, store_factory):
        """Without UNSELECT a read-write selection is re-examined before CLOSE."""
        server, store = store_factory({"INBOX": [make_email(1)]}, capabilities=("IMAP4rev1", "AUTH=PLAIN"))
        server.folders["INBOX"][0]["flags"].add("\\Deleted")
        folder = store.get_folder("INBOX")
        folder.open(READ_WRITE)
        folder.close()

        assert server.contents("INBOX") == [make_email(1)]
        assert not any(cmd.startswith("UNSELECT") for cmd in server.commands)
        assert any(cmd.startswith("EXAMINE") for cmd in server.commands)

    def test_not_open(self, store_factory):
        _, store = store_factory({"INBOX": [make_email(1)]})
        folder = store.get_folder("INBOX")
        with pytest.raises(StoreError):
            folder.fetch(1, 1)
        with pytest.raises(StoreError):
            folder.close()

    def test_set_deleted_needs_read_write(self, store_factory):
        _, store = store_factory({"INBOX": [make_email(1)]})
        folder = store.get_folder("INBOX")
        folder.open(READ_ONLY)
        try:
            with pytest.raises(StoreError):
                folder.set_deleted(StoreMessage(1, 1))
        finally:
            folder.close()


class TestFetch:
    def test_fetch_headers(self, store_factory):
        _, store = store_factory({"INBOX": [make_email(1), make_email(2), make_email(3)]})
        folder = store.get_folder("INBOX")
        folder.open(READ_ONLY)
        try:
            messages = folder.fetch(2, 3, PROFILE_HEADERS)
        finally:
            folder.close()

        assert [(m.seq, m.uid) for m in messages] == [(2, 2), (3, 3)]
        assert messages[0].headers["Subject"] == "Message 2"
        assert messages[0].content is None

    def test_fetch_empty_range(self, store_factory):
        _, store = store_factory({"INBOX": []})
        folder = store.get_folder("INBOX")
        folder.open(READ_ONLY)
        try:
            assert folder.fetch(1, 0) == []
        finally:
            folder.close()

    def test_fetch_uids_full(self, store_factory):
        server, store = store_factory({"INBOX": [{"content": make_email(1), "flags": ["\\Seen", "Work"]}]})
        folder = store.get_folder("INBOX")
        folder.open(READ_ONLY)
        try:
            (message,) = folder.fetch_uids([1], PROFILE_FULL)
        finally:
            folder.close()

        assert message.content == make_email(1)
        assert set(message.flags) == {"\\Seen", "Work"}
        assert message.internal_date == '"01-Jan-2024 00:00:00 +0000"'
        assert message.size == len(make_email(1))
        assert message.headers["Message-ID"] == "<1@test>"

    def test_message_uids(self, store_factory):
        server, store = store_factory({"INBOX": [make_email(1), make_email(2)], "Empty": []})
        server.add_message("INBOX", make_email(3))
        inbox = store.get_folder("INBOX")
        inbox.open(READ_ONLY)
        try:
            assert inbox.message_uids() == [1, 2, 3]
        finally:
            inbox.close()

        empty = store.get_folder("Empty")
        empty.open(READ_ONLY)
        try:
            assert empty.message_uids() == []
        finally:
            empty.close()

    def test_fetch_failure(self, store_factory):
        server, store = store_factory({"INBOX": [make_email(1), make_email(2)]})
        server.fail_fetch.add(("INBOX", "1:2"))
        folder = store.get_folder("INBOX")
        folder.open(READ_ONLY)
        try:
            with pytest.raises(StoreError) as excinfo:
                folder.fetch(1, 2)
        finally:
            folder.close()

        assert "FETCH 1:2" in str(excinfo.value)
        assert "folder 'INBOX'" in str(excinfo.value)


class TestAppendCreate:
    def test_append_keeps_flags_and_date(self, store_factory):
        server, store = store_factory({"INBOX": []})
        message = StoreMessage(
            1,
            7,
            flags=("\\Seen", "\\Recent", "$Junk", "Work"),
            internal_date='"02-Feb-2023 10:00:00 +0000"',
            content=make_email(1),
        )

        store.get_folder("INBOX").append(message)

        (stored,) = server.folders["INBOX"]
        assert stored["content"] == make_email(1)
        assert stored["flags"] == {"\\Seen", "Work"}
        assert stored["date"] == "02-Feb-2023 10:00:00 +0000"

    def test_append_without_content(self, store_factory):
        _, store = store_factory({"INBOX": []})
        with pytest.raises(StoreError):
            store.get_folder("INBOX").append(StoreMessage(1, 1))

    def test_append_to_missing_folder(self, store_factory):
        _, store = store_factory({"INBOX": []})
        with pytest.raises(StoreError) as excinfo:
            store.get_folder("Missing").append(StoreMessage(1, 1, content=make_email(1)))
        assert "TRYCREATE" in str(excinfo.value)

    def test_create_folder(self, store_factory):
        server, store = store_factory({"INBOX": []})
        folder = store.get_folder("Projects")

        assert not folder.exists()
        folder.create(HOLDS_MESSAGES | HOLDS_FOLDERS)

        assert folder.exists()
        assert "Projects" in server.folders
        assert "Projects" not in server.noselect

    def test_create_folder_holding_only_folders(self, store_factory):
        server, store = store_factory({"INBOX": []})
        folder = store.get_folder("Archive")
        folder.create(HOLDS_FOLDERS)

        assert "Archive" in server.noselect
        assert folder.type == HOLDS_FOLDERS

    def test_create_denied(self, store_factory):
        server, store = store_factory({"INBOX": []})
        server.create_denied.add("Secret")
        with pytest.raises(StoreError) as excinfo:
            store.get_folder("Secret").create(HOLDS_MESSAGES | HOLDS_FOLDERS)
        assert excinfo.value.command == "CREATE"


class TestConnections:
    def test_unreachable_server(self):
        store = ImapStore(make_conf(get_free_port()), "down")
        with pytest.raises(StoreError) as excinfo:
            store.connection()
        assert excinfo.value.command == "LOGIN"

    def test_connection_per_thread(self, store_factory):
        _, store = store_factory({"INBOX": []})
        main_conn = store.connection()
        other = {}

        def worker():
            other["conn"] = store.connection()

        t = threading.Thread(target=worker)
        t.start()
        t.join()

        assert store.connection() is main_conn
        assert other["conn"] is not main_conn

    def test_close_logs_out(self, single_mock_server):
        server, port = single_mock_server({"INBOX": []})
        with ImapStore(make_conf(port), "test") as store:
            store.connection()
        assert "LOGOUT" in server.commands

    def test_connection_reused_without_noop(self, store_factory):
        server, store = store_factory({"INBOX": [make_email(1)]})
        store.connection()
        store.connection()
        store.capabilities()
        store.capabilities()

        assert "NOOP" not in server.commands

    def test_open_checks_connection_once(self, store_factory):
        server, store = store_factory({"INBOX": [make_email(1)]})
        folder = store.get_folder("INBOX")
        store.connection()

        folder.open(READ_ONLY)
        folder.fetch(1, 1, PROFILE_HEADERS)
        folder.close()

        assert server.commands.count("NOOP") == 1

    def test_stale_connection_rebuilt_on_open(self, store_factory):
        _, store = store_factory({"INBOX": [make_email(1)]})
        stale = store.connection()
        stale.wrapped.shutdown()

        folder = store.get_folder("INBOX")
        assert folder.open(READ_ONLY) == 1
        folder.close()

        assert store.connection() is not stale
        assert store.connection_count() == 1

    def test_release_idle_connections(self, store_factory):
        server, store = store_factory({"INBOX": []})
        store.connection()

        t = threading.Thread(target=store.connection)
        t.start()
        t.join()
        assert store.connection_count() == 2
        assert server.sessions == 2

        assert store.release_idle_connections() == 1
        assert store.connection_count() == 1
        assert server.sessions == 1

    def test_release_keeps_live_threads(self, store_factory):
        _, store = store_factory({"INBOX": []})
        store.connection()

        assert store.release_idle_connections() == 0
        assert store.connection_count() == 1
