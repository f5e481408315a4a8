"""
Header Normalization

Turns raw header values into canonical strings so that the same message yields
the same text no matter which server delivered it:

- header blocks are parsed keeping each octet as a latin-1 code point, so stray
  8-bit values (servers that send raw UTF-8 or a legacy charset instead of an
  RFC 2047 encoded word) can be re-decoded later
- encoded words are decoded, adjacent words sharing a charset are joined first
- folding, CR/LF and soft hyphens are removed
"""

from __future__ import annotations

import re
from email import policy
from email.header import decode_header
from email.parser import Parser

DEFAULT_CHARSET = "iso-8859-1"

# Charsets whose decoding would not change a latin-1 view of the octets
_PASSTHROUGH_CHARSETS = {"us-ascii", "ascii", "iso-8859-1", "latin-1", "latin1"}

_ENCODED_WORD_GAP = re.compile(r"\?=[\r\n\t ]+=\?")
_FOLDING = re.compile(r"\r?\n(?=[ \t])")
SOFT_HYPHEN = "\u00ad"


def parse_headers(raw_headers):
    """Parse a raw header block (bytes or str) into an email.message.Message."""
    if raw_headers is None:
        return None
    if isinstance(raw_headers, (bytes, bytearray)):
        text = bytes(raw_headers).decode("latin-1")
    else:
        text = str(raw_headers)
    return Parser(policy=policy.compat32).parsestr(text, headersonly=True)


def fix_encoding(value, reference_charset=DEFAULT_CHARSET):
    """Re-decode a header whose octets were sent without an encoded word.

    Returns the value unchanged when it starts with an encoded word, is plain
    ASCII, or cannot be re-decoded with UTF-8 or the reference charset.
    """
    if value is None:
        return None
    if value.strip().startswith("=?"):
        return value

    try:
        octets = value.encode("latin-1")
    except UnicodeEncodeError:
        # Already decoded text, nothing to repair
        return value

    if octets.isascii():
        return value

    try:
        return octets.decode("utf-8")
    except UnicodeDecodeError:
        pass

    charset = (reference_charset or "").lower()
    if charset and charset not in _PASSTHROUGH_CHARSETS:
        try:
            return octets.decode(charset)
        except (LookupError, UnicodeDecodeError):
            pass
    return value


def decode_mime(value):
    """Decode RFC 2047 encoded words into a unicode string."""
    if value is None:
        return None
    try:
        decoded_list = decode_header(value)
    except Exception:
        return str(value)

    text_parts = []
    for data, charset in decoded_list:
        if isinstance(data, str):
            text_parts.append(data)
            continue
        if not charset:
            # Unencoded chunks come back as raw-unicode-escape bytes
            text_parts.append(data.decode("raw-unicode-escape", errors="replace"))
            continue
        try:
            text_parts.append(data.decode(charset, errors="replace"))
        except LookupError:
            text_parts.append(data.decode("utf-8", errors="replace"))
    return "".join(text_parts)


def unfold(value):
    return _FOLDING.sub("", value)


def normalize_header(value, reference_charset=DEFAULT_CHARSET):
    """Return the canonical decoded form of a raw header value, or None."""
    if value is None:
        return None
    value = fix_encoding(str(value), reference_charset)
    value = _ENCODED_WORD_GAP.sub("?==?", value)
    value = unfold(value)
    value = decode_mime(value)
    return value.strip().replace("\n", "").replace("\r", "").replace(SOFT_HYPHEN, "")
