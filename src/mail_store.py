"""
Mail Store

IMAP-backed mail store used by the crawl, copy and delete passes.

Each worker thread talks to the server over its own connection (thread-local),
so the selected folder and its open mode are never shared between workers.
A connection is checked with NOOP and rebuilt (refreshing OAuth2 tokens) when a
folder is opened, and every connection is wrapped in the transient-error retry
proxy. Sessions of finished worker threads are logged out after each pass.

All protocol failures surface as StoreError carrying the folder and command
that failed; callers never see imaplib exceptions.
"""

from __future__ import annotations

import contextlib
import imaplib
import threading
from collections import deque

import header_normalize
import imap_common
import imap_retry
import imap_session
from imap_common import safe_print

# Folder type bitmask
HOLDS_MESSAGES = 1
HOLDS_FOLDERS = 2

READ_ONLY = "read-only"
READ_WRITE = "read-write"

PROFILE_HEADERS = "(UID BODY.PEEK[HEADER])"
PROFILE_FULL = "(UID FLAGS INTERNALDATE RFC822.SIZE BODY.PEEK[])"

_UNKNOWN = object()


class StoreError(Exception):
    """A mail-store operation failed."""

    def __init__(self, message, folder=None, command=None):
        super().__init__(message)
        self.folder = folder
        self.command = command

    def __str__(self):
        text = super().__str__()
        context = []
        if self.command:
            context.append(self.command)
        if self.folder is not None:
            context.append(f"folder '{self.folder}'")
        return f"{text} ({', '.join(context)})" if context else text


class ReadOnlyFolderError(StoreError):
    """The server refused to open a folder read-write."""


class StoreMessage:
    """One message as returned by a fetch."""

    def __init__(self, seq, uid, headers=None, flags=(), size=None, internal_date=None, content=None):
        self.seq = seq
        self.uid = uid
        self.headers = headers
        self.flags = tuple(flags)
        self.size = size
        self.internal_date = internal_date
        self.content = content

    @classmethod
    def from_fetch(cls, entry):
        raw_headers = entry["header"] if entry["header"] is not None else entry["body"]
        return cls(
            seq=entry["seq"],
            uid=entry["uid"],
            headers=header_normalize.parse_headers(raw_headers),
            flags=entry["flags"],
            size=entry["size"],
            internal_date=entry["internal_date"],
            content=entry["body"],
        )

    def __repr__(self):
        return f"StoreMessage(seq={self.seq}, uid={self.uid})"


@contextlib.contextmanager
def _protocol(command, folder=None):
    """Turn imaplib and socket failures into StoreError."""
    try:
        yield
    except StoreError:
        raise
    except (imaplib.IMAP4.error, OSError) as e:
        raise StoreError(f"IMAP failure: {e}", folder=folder, command=command) from e


def _logout(conn):
    try:
        conn.logout()
    except (imaplib.IMAP4.error, OSError):
        # Already dropped by the server
        pass


def _check(typ, data, command, folder=None):
    if typ != "OK":
        detail = b" ".join(d for d in data or () if isinstance(d, bytes)).decode("utf-8", errors="replace")
        message = f"Server answered {typ}: {detail}" if detail else f"Server answered {typ}"
        raise StoreError(message, folder=folder, command=command)


class ImapStore:
    """One IMAP account.

    ``conf`` is the dict built by imap_session.build_imap_conf.
    """

    def __init__(self, conf, label="store", max_retries=3, initial_wait=5):
        self.conf = conf
        self.label = label
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._local = threading.local()
        self._connections = []
        self._lock = threading.Lock()
        self._separator = _UNKNOWN

    def connection(self, check=False):
        """Return this thread's connection, logging in on first use.

        With ``check`` the connection is tested with NOOP first and rebuilt
        (refreshing OAuth2 tokens) when it went stale. Folders check once when
        they are opened and passes once when they start; every other command
        goes straight to the server.
        """
        raw = getattr(self._local, "raw", None)
        if raw is not None and not check:
            return self._local.conn
        fresh = imap_session.ensure_connection(raw, self.conf)
        if fresh is None:
            raise StoreError(f"Could not connect to {self.conf['host']} as {self.conf['user']}", command="LOGIN")
        if fresh is not raw:
            if raw is not None:
                self._forget(raw)
            with self._lock:
                self._connections.append((threading.current_thread(), fresh))
            self._local.raw = fresh
            self._local.conn = imap_retry.RetryingConnection(
                fresh, max_retries=self._max_retries, initial_wait=self._initial_wait, label=self.label
            )
            self._local.capabilities = {str(cap).upper() for cap in fresh.capabilities}
            self._local.selected = None
        return self._local.conn

    def capabilities(self) -> set[str]:
        self.connection()
        return self._local.capabilities

    def _forget(self, conn):
        with self._lock:
            self._connections = [(owner, c) for owner, c in self._connections if c is not conn]
        _logout(conn)

    def release_idle_connections(self) -> int:
        """Log out connections left behind by threads that have finished.

        Every pass runs its batches on a fresh worker pool; calling this once
        the pool has drained keeps the account at one session per live thread.
        Returns the number of sessions closed.
        """
        with self._lock:
            idle = [conn for owner, conn in self._connections if not owner.is_alive()]
            self._connections = [(owner, conn) for owner, conn in self._connections if owner.is_alive()]
        for conn in idle:
            _logout(conn)
        return len(idle)

    def connection_count(self) -> int:
        """Number of sessions this store currently holds open."""
        with self._lock:
            return len(self._connections)

    def separator(self):
        """Hierarchy separator of the account, None for a flat namespace."""
        if self._separator is _UNKNOWN:
            conn = self.connection()
            with _protocol("LIST"):
                typ, data = conn.list('""', '""')
            _check(typ, data, "LIST")
            entries = imap_common.parse_list_response(data)
            self._separator = entries[0][1] if entries else None
        return self._separator

    def default_folder(self) -> ImapFolder:
        return ImapFolder(self, "", separator=self.separator(), attributes=set())

    def get_folder(self, name: str) -> ImapFolder:
        return ImapFolder(self, name)

    # Per-thread selection state
    def _selected(self):
        return getattr(self._local, "selected", None)

    def _set_selected(self, value):
        self._local.selected = value

    def close(self):
        """Log out every connection opened by this store."""
        with self._lock:
            connections, self._connections = self._connections, []
        for _, conn in connections:
            _logout(conn)
        self._local = threading.local()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def __repr__(self):
        return f"ImapStore({self.label!r}, host={self.conf.get('host')!r})"


class ImapFolder:
    """Handle on a folder of an ImapStore.

    The handle is cheap and holds no connection state; opening it selects the
    folder on the calling thread's connection.
    """

    def __init__(self, store: ImapStore, full_name: str, separator=_UNKNOWN, attributes=None):
        self.store = store
        self.full_name = full_name
        self._separator = separator
        self._attributes = attributes

    @property
    def name(self):
        sep = self.separator
        return self.full_name.rsplit(sep, 1)[-1] if sep else self.full_name

    @property
    def separator(self):
        if self._separator is _UNKNOWN:
            self._describe()
        return self._separator

    @property
    def type(self) -> int:
        if not self.full_name:
            return HOLDS_FOLDERS
        attributes = self._describe()
        folder_type = 0
        if imap_common.ATTR_NOSELECT not in attributes:
            folder_type |= HOLDS_MESSAGES
        if imap_common.ATTR_NOINFERIORS not in attributes:
            folder_type |= HOLDS_FOLDERS
        return folder_type

    def _describe(self):
        if self._attributes is None:
            entry = self._lookup()
            if entry is None:
                raise StoreError("Folder does not exist", folder=self.full_name, command="LIST")
            self._attributes, self._separator = entry
        elif self._separator is _UNKNOWN:
            self._separator = self.store.separator()
        return self._attributes

    def _lookup(self):
        conn = self.store.connection()
        with _protocol("LIST", self.full_name):
            typ, data = conn.list('""', imap_common.quote_mailbox(self.full_name))
        _check(typ, data, "LIST", self.full_name)
        for attributes, delimiter, name in imap_common.parse_list_response(data):
            if name == self.full_name and "\\nonexistent" not in attributes:
                return attributes, delimiter
        return None

    def exists(self) -> bool:
        if not self.full_name:
            return True
        entry = self._lookup()
        if entry is not None:
            self._attributes, self._separator = entry
        return entry is not None

    def list(self) -> list[ImapFolder]:
        """Direct children of this folder."""
        sep = self.separator if self.full_name else self.store.separator()
        if self.full_name and not sep:
            return []
        pattern = f"{self.full_name}{sep}%" if self.full_name else "%"
        conn = self.store.connection()
        with _protocol("LIST", self.full_name):
            typ, data = conn.list('""', imap_common.quote_mailbox(pattern))
        _check(typ, data, "LIST", self.full_name)
        children = []
        for attributes, delimiter, name in imap_common.parse_list_response(data):
            if name == self.full_name or "\\nonexistent" in attributes:
                continue
            children.append(ImapFolder(self.store, name, separator=delimiter, attributes=attributes))
        return children

    def create(self, folder_type: int) -> None:
        name = self.full_name
        sep = self.separator if self._attributes is not None else self.store.separator()
        if folder_type == HOLDS_FOLDERS and sep:
            # Servers create a folder that can only hold folders from "name<sep>"
            name = f"{name}{sep}"
        conn = self.store.connection()
        with _protocol("CREATE", self.full_name):
            typ, data = conn.create(imap_common.quote_mailbox(name))
        _check(typ, data, "CREATE", self.full_name)
        self._attributes = None

    def open(self, mode: str = READ_ONLY) -> int:
        """Select the folder on this thread's connection and return its message count."""
        conn = self.store.connection(check=True)
        mailbox = imap_common.quote_mailbox(self.full_name)
        command = "SELECT" if mode == READ_WRITE else "EXAMINE"
        try:
            with _protocol(command, self.full_name):
                typ, data = conn.select(mailbox, readonly=(mode != READ_WRITE))
        except StoreError as e:
            if isinstance(e.__cause__, imaplib.IMAP4.readonly):
                raise ReadOnlyFolderError("Server refused read-write access", self.full_name, command) from e.__cause__
            raise
        _check(typ, data, command, self.full_name)
        try:
            count = int(data[0])
        except (TypeError, ValueError, IndexError) as e:
            raise StoreError(f"Unexpected EXISTS count {data!r}", self.full_name, command) from e
        self.store._set_selected((self.full_name, mode, count))
        return count

    def _require_open(self, mode=None):
        selected = self.store._selected()
        if selected is None or selected[0] != self.full_name:
            raise StoreError("Folder is not open", folder=self.full_name)
        if mode is not None and selected[1] != mode:
            raise StoreError(f"Folder is not open {mode}", folder=self.full_name)
        return selected

    def is_open(self) -> bool:
        selected = self.store._selected()
        return selected is not None and selected[0] == self.full_name

    def mode(self):
        return self._require_open()[1]

    def message_count(self) -> int:
        return self._require_open()[2]

    def close(self, expunge: bool = False) -> None:
        """Leave the folder, purging \\Deleted messages only when asked to."""
        selected = self._require_open()
        conn = self.store.connection()
        try:
            if expunge and selected[1] == READ_WRITE:
                with _protocol("CLOSE", self.full_name):
                    typ, data = conn.close()
                _check(typ, data, "CLOSE", self.full_name)
            elif "UNSELECT" in self.store.capabilities():
                with _protocol("UNSELECT", self.full_name):
                    typ, data = conn.unselect()
                _check(typ, data, "UNSELECT", self.full_name)
            else:
                # CLOSE on a read-only selection never expunges
                with _protocol("CLOSE", self.full_name):
                    if selected[1] == READ_WRITE:
                        conn.select(imap_common.quote_mailbox(self.full_name), readonly=True)
                    typ, data = conn.close()
                _check(typ, data, "CLOSE", self.full_name)
        finally:
            self.store._set_selected(None)

    def fetch(self, start: int, end: int, profile: str = PROFILE_HEADERS) -> list[StoreMessage]:
        """Fetch messages start..end (1-based, inclusive) of the open folder."""
        self._require_open()
        if start > end:
            return []
        conn = self.store.connection()
        with _protocol("FETCH", self.full_name):
            typ, data = conn.fetch(f"{start}:{end}", profile)
        _check(typ, data, f"FETCH {start}:{end}", self.full_name)
        return [StoreMessage.from_fetch(entry) for entry in imap_common.parse_fetch_response(data)]

    def fetch_uids(self, uids, profile: str = PROFILE_FULL) -> list[StoreMessage]:
        """Fetch messages of the open folder by UID."""
        self._require_open()
        uids = list(uids)
        if not uids:
            return []
        conn = self.store.connection()
        uid_set = ",".join(str(uid) for uid in uids)
        with _protocol("UID FETCH", self.full_name):
            typ, data = conn.uid(imap_common.CMD_FETCH, uid_set, profile)
        _check(typ, data, "UID FETCH", self.full_name)
        return [StoreMessage.from_fetch(entry) for entry in imap_common.parse_fetch_response(data)]

    def message_uids(self) -> list[int]:
        """UIDs of every message in the open folder, ascending."""
        self._require_open()
        conn = self.store.connection()
        with _protocol("UID SEARCH", self.full_name):
            typ, data = conn.uid(imap_common.CMD_SEARCH, None, "ALL")
        _check(typ, data, "UID SEARCH", self.full_name)
        uids = []
        for chunk in data or ():
            if isinstance(chunk, bytes):
                uids.extend(int(uid) for uid in chunk.split())
        return sorted(uids)

    def append(self, message: StoreMessage) -> None:
        """Append a fully fetched message, keeping its flags and internal date."""
        if message.content is None:
            raise StoreError(f"Message UID {message.uid} has no content to append", self.full_name, "APPEND")
        flags = imap_common.filter_preservable_flags(message.flags)
        flag_list = f"({' '.join(flags)})" if flags else None
        conn = self.store.connection()
        with _protocol("APPEND", self.full_name):
            typ, data = conn.append(
                imap_common.quote_mailbox(self.full_name), flag_list, message.internal_date, message.content
            )
        _check(typ, data, "APPEND", self.full_name)

    def set_deleted(self, message: StoreMessage) -> None:
        """Flag a message of the open folder \\Deleted, by UID."""
        self._require_open(READ_WRITE)
        if message.uid is None:
            raise StoreError(f"Message {message.seq} has no UID", self.full_name, "UID STORE")
        conn = self.store.connection()
        with _protocol("UID STORE", self.full_name):
            typ, data = conn.uid(
                imap_common.CMD_STORE, str(message.uid), imap_common.OP_ADD_FLAGS, imap_common.FLAG_DELETED_LITERAL
            )
        _check(typ, data, "UID STORE", self.full_name)

    def __repr__(self):
        return f"ImapFolder({self.full_name!r})"


def walk_folders(store, on_error=None):
    """Yield every folder of the store, parents before children.

    The root itself is not yielded. A folder whose children cannot be listed is
    reported to ``on_error`` and the walk goes on with the remaining folders.
    """
    pending = deque([store.default_folder()])
    while pending:
        folder = pending.popleft()
        try:
            holds_folders = folder.type & HOLDS_FOLDERS
            children = folder.list() if holds_folders else []
        except StoreError as e:
            safe_print(f"[{folder.full_name or '/'}] Could not list sub-folders: {e}")
            if on_error is not None:
                on_error(e)
            continue
        for child in children:
            yield child
            pending.append(child)
