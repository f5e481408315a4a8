"""
IMAP Common Utilities

Shared low-level helpers for the mirror: thread-safe logging, connection setup,
mailbox name quoting, LIST/FETCH response parsing and flag filtering.
"""

from __future__ import annotations

import imaplib
import re
import threading
import unicodedata
import urllib.parse

# Standard IMAP flags
FLAG_SEEN = "\\Seen"
FLAG_ANSWERED = "\\Answered"
FLAG_FLAGGED = "\\Flagged"
FLAG_DRAFT = "\\Draft"
FLAG_DELETED_LITERAL = "(\\Deleted)"

# Standard IMAP flags that can be preserved when copying
# \Recent is session-specific and cannot be set by clients
# \Deleted should not be preserved as it marks messages for removal
PRESERVABLE_FLAGS = {FLAG_SEEN, FLAG_ANSWERED, FLAG_FLAGGED, FLAG_DRAFT}

# Keywords that are server or client bookkeeping and are not carried over
KEYWORD_BLACKLIST = frozenset(
    {
        "$Forwarded",
        "$Junk",
        "$NotJunk",
        "$Classified",
        "$Filtered",
        "$LowImportance",
        "$HighImportance",
        "Sent",
        "$MDNSent",
        "$SubmitPending",
        "$Submitted",
        "Junk",
        "NonJunk",
        "$recent",
        "DTAG_document",
        "DTAG_image",
        "$X-Me-Annot-1",
        "$X-Me-Annot-2",
        "\\Unseen",
        "$sent",
        "$attachment",
        "$signed",
        "$encrypted",
        "$HasAttachment",
        "$HasNoAttachment",
        "$IsTrusted",
        "$X-ME-Annot-2",
        "$purchases",
        "$social",
    }
)

# Folder attributes from LIST responses
ATTR_NOSELECT = "\\noselect"
ATTR_NOINFERIORS = "\\noinferiors"

# IMAP Commands
CMD_STORE = "STORE"
CMD_FETCH = "FETCH"
CMD_SEARCH = "SEARCH"
OP_ADD_FLAGS = "+FLAGS"

_KEYWORD_INVALID = re.compile(r'[(){ %*"\\\]\x00-\x1f\x7f]')
_LIST_PATTERN = re.compile(r'\((?P<flags>[^)]*)\) (?P<delimiter>"(?:[^"\\]|\\.)*"|NIL) (?P<name>.+)', re.IGNORECASE)
_FETCH_SEQ = re.compile(rb"^\s*(\d+)\s+\(")
_FETCH_UID = re.compile(rb"UID\s+(\d+)", re.IGNORECASE)
_FETCH_FLAGS = re.compile(rb"FLAGS\s+\(([^)]*)\)", re.IGNORECASE)
_FETCH_SIZE = re.compile(rb"RFC822\.SIZE\s+(\d+)", re.IGNORECASE)
_FETCH_INTERNALDATE = re.compile(rb'INTERNALDATE\s+"([^"]*)"', re.IGNORECASE)
_FETCH_SECTION = re.compile(rb"BODY\[(?P<section>[^\]]*)\]", re.IGNORECASE)

_print_lock = threading.Lock()


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}")


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for use as an IMAP astring."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def parse_list_response(data) -> list[tuple[set[str], str | None, str]]:
    """Parse the untagged data of a LIST command.

    Returns a list of (attributes, delimiter, name) tuples. Attributes are
    lower-cased; the delimiter is None when the server answers NIL. Names sent
    as literals arrive from imaplib as (prefix, literal) tuples.
    """
    entries = []
    for item in data or ():
        if item is None:
            continue
        if isinstance(item, tuple):
            prefix = item[0].decode("utf-8", errors="replace")
            prefix = re.sub(r"\{\d+\}$", "", prefix).rstrip()
            line = f'{prefix} "{item[1].decode("utf-8", errors="replace")}"'
        elif isinstance(item, bytes):
            line = item.decode("utf-8", errors="replace")
        else:
            line = str(item)

        match = _LIST_PATTERN.match(line.strip())
        if not match:
            safe_print(f"Warning: Unparseable LIST response: {line!r}")
            continue

        attributes = {flag.lower() for flag in match.group("flags").split()}
        raw_delimiter = match.group("delimiter")
        delimiter = None if raw_delimiter.upper() == "NIL" else _unquote(raw_delimiter)
        entries.append((attributes, delimiter, _unquote(match.group("name").strip())))
    return entries


def parse_fetch_response(data) -> list[dict]:
    """Parse the untagged data of a FETCH / UID FETCH command.

    Each message is returned as a dict with the keys ``seq``, ``uid``,
    ``flags`` (tuple of str), ``size``, ``internal_date`` (the raw quoted
    string usable by APPEND), ``header`` and ``body`` (bytes or None).
    Items that carry no literal (for instance a lone FLAGS response) are
    reported too, so callers can tell which messages the server answered for.
    """
    messages: list[dict] = []
    current = None

    def absorb(meta: bytes, entry: dict) -> None:
        uid = _FETCH_UID.search(meta)
        if uid:
            entry["uid"] = int(uid.group(1))
        flags = _FETCH_FLAGS.search(meta)
        if flags:
            entry["flags"] = tuple(flags.group(1).decode("utf-8", errors="replace").split())
        size = _FETCH_SIZE.search(meta)
        if size:
            entry["size"] = int(size.group(1))
        internal_date = _FETCH_INTERNALDATE.search(meta)
        if internal_date:
            entry["internal_date"] = '"' + internal_date.group(1).decode("ascii", errors="replace") + '"'

    def start(meta: bytes) -> dict | None:
        seq = _FETCH_SEQ.match(meta)
        if not seq:
            return None
        entry = {
            "seq": int(seq.group(1)),
            "uid": None,
            "flags": (),
            "size": None,
            "internal_date": None,
            "header": None,
            "body": None,
        }
        messages.append(entry)
        return entry

    for item in data or ():
        if item is None:
            continue
        if isinstance(item, tuple):
            meta, literal = item[0], item[1]
            entry = start(meta)
            if entry is None:
                # Continuation of the previous message (a second literal)
                entry = current
            if entry is None:
                continue
            current = entry
            absorb(meta, entry)
            sections = _FETCH_SECTION.findall(meta)
            if sections and sections[-1].upper().startswith(b"HEADER"):
                entry["header"] = literal
            else:
                entry["body"] = literal
        elif isinstance(item, bytes):
            if item.strip() == b")":
                continue
            entry = start(item)
            if entry is None:
                # Trailing attributes after a literal, e.g. b' FLAGS (\\Seen))'
                if current is not None:
                    absorb(item, current)
                continue
            current = entry
            absorb(item, entry)
    return messages


def sanitize_keyword(keyword: str) -> str:
    """Strip characters that are not allowed in an IMAP flag keyword."""
    normalized = unicodedata.normalize("NFKD", keyword)
    ascii_only = normalized.encode("ascii", errors="ignore").decode("ascii")
    return _KEYWORD_INVALID.sub("", ascii_only)


def filter_preservable_flags(flags) -> list[str]:
    """Return the flags that should be set on a copied message.

    System flags are kept when they are in PRESERVABLE_FLAGS; keywords are kept
    unless blacklisted, after sanitizing.
    """
    system_flags = {flag.lower(): flag for flag in PRESERVABLE_FLAGS}
    kept = []
    for flag in flags or ():
        if flag.startswith("\\"):
            canonical = system_flags.get(flag.lower())
            if canonical and canonical not in kept:
                kept.append(canonical)
            continue
        if flag in KEYWORD_BLACKLIST:
            continue
        cleaned = sanitize_keyword(flag)
        if cleaned and cleaned not in KEYWORD_BLACKLIST and cleaned not in kept:
            kept.append(cleaned)
    return kept


def get_imap_connection_from_conf(conf):
    """
    Establishes an IMAP connection using a conf dict.

    conf dict structure:
        {
            "host": str,
            "user": str,
            "password": str or None,
            "oauth2_token": str or None,
            "oauth2": dict or None  # Contains provider, client_id, email, client_secret
        }
    """
    return get_imap_connection(conf["host"], conf["user"], conf.get("password"), conf.get("oauth2_token"))


def get_imap_connection(host, user, password=None, oauth2_token=None):
    """
    Establishes an SSL connection to the IMAP server and logs in.
    Supports both basic auth (password) and OAuth 2.0 (XOAUTH2).
    Returns the connection object or None if failed.
    """
    if not host or not user:
        safe_print(f"Error: Invalid credentials for {host}")
        return None

    if not password and not oauth2_token:
        safe_print(f"Error: Either password or oauth2_token is required for {host}")
        return None

    try:
        use_ssl = True
        resolved_host = host
        port = None
        if "://" in host:
            parsed = urllib.parse.urlparse(host)
            scheme = parsed.scheme.lower()
            if not scheme or not parsed.hostname:
                raise ValueError("Invalid IMAP host")
            if scheme in {"imap", "tcp"}:
                use_ssl = False
            elif scheme in {"imaps", "imap+ssl", "imapssl", "ssl"}:
                use_ssl = True
            else:
                raise ValueError(f"Unsupported IMAP scheme: {scheme}")
            resolved_host = parsed.hostname
            port = parsed.port

        if use_ssl:
            conn = imaplib.IMAP4_SSL(resolved_host, port) if port else imaplib.IMAP4_SSL(resolved_host)
        else:
            conn = imaplib.IMAP4(resolved_host, port) if port else imaplib.IMAP4(resolved_host)
        if oauth2_token:
            auth_string = f"user={user}\x01auth=Bearer {oauth2_token}\x01\x01"
            conn.authenticate("XOAUTH2", lambda _: auth_string.encode())
        else:
            conn.login(user, password)
        return conn
    except Exception as e:
        safe_print(f"Connection error to {host}: {e}")
        return None


def is_connection_alive(conn) -> bool:
    """Return True when the connection answers NOOP."""
    try:
        typ, _ = conn.noop()
        return typ == "OK"
    except (imaplib.IMAP4.error, OSError):
        return False

