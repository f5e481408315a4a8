"""
Tests for imap_retry.py

Tests cover:
- Transient error detection
- RetryingConnection transparent proxying
- Retry with exponential backoff on transient errors
- Pass-through for non-retryable methods
- Pass-through for non-transient errors
- Retrying against a live mock server
"""

import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import imap_common
import imap_retry
from imap_retry import RetryingConnection


class TestIsTransientResponse:
    def test_ok_is_never_transient(self):
        assert imap_retry.is_transient_response("OK", [b"Server Busy"]) is False

    @pytest.mark.parametrize(
        "text",
        [b"[UNAVAILABLE] Backend down", b"Server Busy, try later", b"Please try again", b"[THROTTLED] slow down"],
    )
    def test_transient_patterns(self, text):
        assert imap_retry.is_transient_response("NO", [text]) is True

    def test_string_data(self):
        assert imap_retry.is_transient_response("NO", ["Server Busy"]) is True

    def test_other_failures(self):
        assert imap_retry.is_transient_response("NO", [b"[NONEXISTENT] Folder not found"]) is False
        assert imap_retry.is_transient_response("BAD", None) is False


class TestRetryingConnection:
    def _proxy(self, conn, max_retries=3):
        sleeps = []
        return RetryingConnection(conn, max_retries=max_retries, initial_wait=5, label="source", sleep=sleeps.append), sleeps

    def test_success_first_try(self):
        conn = MagicMock()
        conn.select.return_value = ("OK", [b"3"])
        proxy, sleeps = self._proxy(conn)

        assert proxy.select('"INBOX"') == ("OK", [b"3"])
        assert conn.select.call_count == 1
        assert sleeps == []

    def test_retries_with_backoff_then_succeeds(self, capsys):
        conn = MagicMock()
        conn.fetch.side_effect = [("NO", [b"Server Busy"]), ("NO", [b"Server Busy"]), ("OK", [b"data"])]
        proxy, sleeps = self._proxy(conn)

        assert proxy.fetch("1:2", "(UID)") == ("OK", [b"data"])
        assert conn.fetch.call_count == 3
        assert sleeps == [5, 10]
        out = capsys.readouterr().out
        assert "[source] Server busy on FETCH, retrying in 5s... (attempt 1/3)" in out

    def test_gives_up_after_max_retries(self):
        conn = MagicMock()
        conn.append.return_value = ("NO", [b"[UNAVAILABLE] busy"])
        proxy, sleeps = self._proxy(conn, max_retries=2)

        assert proxy.append('"INBOX"', None, None, b"msg") == ("NO", [b"[UNAVAILABLE] busy"])
        assert conn.append.call_count == 2
        assert sleeps == [5]

    def test_non_transient_failure_not_retried(self):
        conn = MagicMock()
        conn.create.return_value = ("NO", [b"[ALREADYEXISTS] Mailbox exists"])
        proxy, sleeps = self._proxy(conn)

        assert proxy.create('"X"') == ("NO", [b"[ALREADYEXISTS] Mailbox exists"])
        assert conn.create.call_count == 1
        assert sleeps == []

    def test_non_retryable_method_passthrough(self):
        conn = MagicMock()
        conn.logout.return_value = ("NO", [b"Server Busy"])
        proxy, _ = self._proxy(conn)

        assert proxy.logout() == ("NO", [b"Server Busy"])
        assert conn.logout.call_count == 1

    def test_attributes_forwarded(self):
        conn = MagicMock()
        conn.capabilities = ("IMAP4REV1", "UNSELECT")
        proxy, _ = self._proxy(conn)

        assert proxy.capabilities == ("IMAP4REV1", "UNSELECT")
        assert proxy.wrapped is conn

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            RetryingConnection(MagicMock(), max_retries=0)
        with pytest.raises(ValueError):
            RetryingConnection(MagicMock(), initial_wait=-1)


class TestRetryingConnectionLive:
    def test_real_connection_commands(self, single_mock_server):
        """The proxy works as a drop-in for an imaplib connection."""
        server, port = single_mock_server({"INBOX": [b"Subject: a\r\n\r\nbody"]})
        conn = imap_common.get_imap_connection(f"imap://localhost:{port}", "user", "pass")
        proxy = RetryingConnection(conn, initial_wait=0)
        try:
            typ, data = proxy.select('"INBOX"')
            assert typ == "OK"
            assert data == [b"1"]
            typ, data = proxy.uid("SEARCH", None, "ALL")
            assert data == [b"1"]
        finally:
            conn.logout()
