"""
Tests for message_identity.py

Tests cover:
- Field normalization (Message-ID, Subject, addresses)
- Identity equality across differently formatted headers
- Rejection of messages that cannot be fingerprinted
- Store failures surfacing as the error cause
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import message_identity
from header_normalize import parse_headers
from mail_store import StoreError, StoreMessage
from message_identity import IdentityError, MessageIdentity


def _identity(raw):
    return message_identity.from_headers(parse_headers(raw))


class TestNormalization:
    def test_message_id(self):
        assert message_identity.normalize_message_id(" <abc.123+x@example.com> ") == "abc.123x@example.com"

    def test_message_id_empty(self):
        assert message_identity.normalize_message_id(None) == ""
        assert message_identity.normalize_message_id("") == ""

    def test_subject(self):
        assert message_identity.normalize_subject("Re: Hello World!") == "rehelloworld"

    def test_subject_encoded_word(self):
        assert message_identity.normalize_subject("=?utf-8?q?Re=3A_Hello_World!?=") == "rehelloworld"

    def test_subject_none(self):
        assert message_identity.normalize_subject(None) == ""

    def test_extract_addresses(self):
        values = ["Alice <Alice@Example.com>, bob@example.org", "\"Bob\" <BOB@example.org>"]
        assert message_identity.extract_addresses(values) == ("alice@example.com", "bob@example.org")

    def test_extract_addresses_none(self):
        assert message_identity.extract_addresses(None) == ()


class TestFromHeaders:
    def test_all_fields(self):
        identity = _identity(
            b"Message-ID: <abc.123@example.com>\r\n"
            b"Subject: Re: Hello World!\r\n"
            b"From: Alice <Alice@Example.com>\r\n"
            b"To: bob@example.org, Carol <carol@example.net>\r\n\r\n"
        )
        assert identity.message_id == "abc.123@example.com"
        assert identity.subject == "rehelloworld"
        assert identity.from_addresses == ("alice@example.com",)
        assert identity.to_addresses == ("bob@example.org", "carol@example.net")

    def test_sender_used_without_from(self):
        identity = _identity(b"Message-ID: <1@test>\r\nSender: list@example.com\r\n\r\n")
        assert identity.from_addresses == ("list@example.com",)

    def test_subject_only(self):
        identity = _identity(b"Subject: Only a subject\r\n\r\n")
        assert identity.message_id == ""
        assert identity.subject == "onlyasubject"

    def test_no_message_id_and_no_subject(self):
        with pytest.raises(IdentityError) as excinfo:
            _identity(b"From: a@example.com\r\nTo: b@example.com\r\n\r\n")
        assert excinfo.value.cause is None

    def test_equal_across_formatting(self):
        """The same message as delivered by two different servers."""
        first = _identity(
            b"Message-ID: <x1@example.com>\r\n"
            b"Subject: =?utf-8?q?Hello_World?=\r\n"
            b"From: Alice <alice@example.com>\r\n"
            b"To: Bob <bob@example.com>, carol@example.com\r\n\r\n"
        )
        second = _identity(
            b"To: CAROL@example.com,\r\n bob@example.com\r\n"
            b"From: alice@EXAMPLE.com\r\n"
            b"Subject: Hello World\r\n"
            b"Message-ID:  <x1@example.com> \r\n\r\n"
        )
        assert first == second
        assert hash(first) == hash(second)
        assert len({first, second}) == 1

    def test_different_subject_differs(self):
        first = _identity(b"Message-ID: <1@test>\r\nSubject: One\r\n\r\n")
        second = _identity(b"Message-ID: <1@test>\r\nSubject: Two\r\n\r\n")
        assert first != second


class TestMessageIdentity:
    def test_immutable(self):
        identity = MessageIdentity("1@test", (), (), "subject")
        with pytest.raises(AttributeError):
            identity.subject = "other"

    def test_not_equal_to_other_types(self):
        assert MessageIdentity("1@test", (), (), "s") != ("1@test", (), (), "s")


class TestDerive:
    def test_derive_from_store_message(self):
        message = StoreMessage(1, 10, headers=parse_headers(b"Message-ID: <1@test>\r\nSubject: Hi\r\n\r\n"))
        assert message_identity.derive(message) == MessageIdentity("1@test", (), (), "hi")

    def test_missing_headers_carry_store_cause(self):
        message = StoreMessage(3, 30, headers=None)
        with pytest.raises(IdentityError) as excinfo:
            message_identity.derive(message)
        assert isinstance(excinfo.value.cause, StoreError)
        assert "UID 30" in str(excinfo.value.cause)
