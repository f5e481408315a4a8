"""
Message Identity

Builds a comparable fingerprint for a message out of its headers.

The raw Message-ID header cannot be trusted on its own: some servers drop it,
some duplicate it and others reformat it. ENVELOPE responses are no better, since
different IMAP implementations answer differently for the same message. The
identity is therefore rebuilt from normalized header content:

- Message-ID, reduced to letters, digits, '.', '-' and '@'
- the sorted set of addresses found in From (or Sender when From is missing)
- the sorted set of addresses found in To
- the decoded Subject, reduced to letters, digits, '.' and '-', lower-cased

A message whose normalized Message-ID and Subject are both empty cannot be told
apart from others and is rejected with IdentityError.
"""

from __future__ import annotations

import re

import header_normalize
from mail_store import StoreError

HEADER_MESSAGE_ID = "Message-ID"
HEADER_SUBJECT = "Subject"
HEADER_FROM = "From"
HEADER_SENDER = "Sender"
HEADER_TO = "To"

EMAIL_PATTERN = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,4}", re.IGNORECASE)
_MESSAGE_ID_STRIP = re.compile(r"[^a-zA-Z0-9.\-@]")
_SUBJECT_STRIP = re.compile(r"[^a-zA-Z0-9.\-]")


class IdentityError(Exception):
    """Raised when a message cannot be fingerprinted.

    ``cause`` is set when the failure comes from the mail store (the headers
    could not be retrieved) rather than from the message content itself.
    """

    def __init__(self, message, cause=None):
        super().__init__(message)
        self.cause = cause


class MessageIdentity:
    """Immutable, hashable fingerprint of a message."""

    __slots__ = ("message_id", "from_addresses", "to_addresses", "subject", "_hash")

    def __init__(self, message_id, from_addresses, to_addresses, subject):
        object.__setattr__(self, "message_id", message_id)
        object.__setattr__(self, "from_addresses", tuple(from_addresses))
        object.__setattr__(self, "to_addresses", tuple(to_addresses))
        object.__setattr__(self, "subject", subject)
        object.__setattr__(
            self, "_hash", hash((message_id, self.from_addresses, self.to_addresses, subject))
        )

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __eq__(self, other):
        if not isinstance(other, MessageIdentity):
            return NotImplemented
        return (
            self.message_id == other.message_id
            and self.from_addresses == other.from_addresses
            and self.to_addresses == other.to_addresses
            and self.subject == other.subject
        )

    def __hash__(self):
        return self._hash

    def __repr__(self):
        return (
            f"MessageIdentity(message_id={self.message_id!r}, from={list(self.from_addresses)!r}, "
            f"to={list(self.to_addresses)!r}, subject={self.subject!r})"
        )


def normalize_message_id(value):
    if not value:
        return ""
    return _MESSAGE_ID_STRIP.sub("", str(value).strip())


def normalize_subject(value, reference_charset=header_normalize.DEFAULT_CHARSET):
    decoded = header_normalize.normalize_header(value, reference_charset)
    if not decoded:
        return ""
    return _SUBJECT_STRIP.sub("", decoded).lower()


def extract_addresses(values):
    """Return the sorted, de-duplicated e-mail addresses found in header values.

    Servers populate From/To with extra or malformed entries in different ways,
    so bare address tokens are matched instead of trusting a structured parse.
    """
    found = set()
    for value in values or ():
        decoded = header_normalize.normalize_header(value)
        if not decoded:
            continue
        for match in EMAIL_PATTERN.finditer(decoded):
            found.add(match.group(0).lower())
    return tuple(sorted(found))


def from_headers(headers, reference_charset=header_normalize.DEFAULT_CHARSET):
    """Build a MessageIdentity from a parsed header mapping (email.message.Message)."""
    message_id = normalize_message_id(headers.get(HEADER_MESSAGE_ID))
    subject = normalize_subject(headers.get(HEADER_SUBJECT), reference_charset)
    if not message_id and not subject:
        raise IdentityError("No good fields for an identity (empty Message-ID and Subject)")

    senders = headers.get_all(HEADER_FROM) or headers.get_all(HEADER_SENDER)
    return MessageIdentity(
        message_id,
        extract_addresses(senders),
        extract_addresses(headers.get_all(HEADER_TO)),
        subject,
    )


def derive(message):
    """Derive the identity of a StoreMessage.

    Raises IdentityError. When the store did not deliver the header block the
    error carries the underlying store failure as ``cause``.
    """
    if message.headers is None:
        cause = StoreError(f"Headers not returned for message {message.seq} (UID {message.uid})")
        raise IdentityError("Message headers unavailable", cause=cause)
    return from_headers(message.headers)
