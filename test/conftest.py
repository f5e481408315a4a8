"""
Shared pytest fixtures and utilities for IMAP mirror tests.
"""

import os
import socket
import sys
from contextlib import contextmanager

import pytest

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from mail_store import ImapStore
from mock_imap_server import start_server_thread
from mock_oauth_server import start_server_thread as start_oauth_server_thread


def get_free_port():
    """Get a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


def make_conf(port, user="user", password="p"):
    """Password-auth connection config for a mock server on localhost."""
    return {
        "host": f"imap://localhost:{port}",
        "user": user,
        "password": password,
        "oauth2_token": None,
        "oauth2": None,
    }


def make_email(n, subject=None, sender="alice@example.com", to="bob@example.com"):
    """A small RFC 822 message with CRLF line endings, as servers store them."""
    subject = f"Message {n}" if subject is None else subject
    return (
        f"Message-ID: <{n}@test>\r\nFrom: {sender}\r\nTo: {to}\r\nSubject: {subject}\r\n\r\nBody {n}\r\n"
    ).encode("utf-8")


def shutdown_server(server):
    server.shutdown()
    server.server_close()  # Explicitly close socket


@pytest.fixture
def mock_server_factory():
    """
    Factory fixture that creates source/destination mock IMAP server pairs.
    Keyword options (delimiter, capabilities) apply to both servers unless
    given per side as src_options / dest_options.
    Automatically cleans up all servers after the test.
    """
    servers = []

    def _create(src_data=None, dest_data=None, src_options=None, dest_options=None):
        src_server, src_port = start_server_thread(0, src_data, **(src_options or {}))
        dest_server, dest_port = start_server_thread(0, dest_data, **(dest_options or {}))
        servers.extend([src_server, dest_server])
        return src_server, dest_server, src_port, dest_port

    yield _create

    for server in servers:
        shutdown_server(server)


@pytest.fixture
def single_mock_server():
    """
    Creates a single mock IMAP server for tests that only need one account.
    """
    servers = []

    def _create(initial_data=None, **options):
        server, actual_port = start_server_thread(0, initial_data, **options)
        servers.append(server)
        return server, actual_port

    yield _create

    for server in servers:
        shutdown_server(server)


@pytest.fixture
def store_pair(mock_server_factory):
    """
    Creates source/destination mock servers with an ImapStore for each.
    Returns (src_server, dest_server, source_store, target_store); stores are
    closed after the test.
    """
    stores = []

    def _create(src_data=None, dest_data=None, src_options=None, dest_options=None):
        src_server, dest_server, src_port, dest_port = mock_server_factory(
            src_data, dest_data, src_options, dest_options
        )
        source = ImapStore(make_conf(src_port, "src_user"), "source", max_retries=1, initial_wait=0)
        target = ImapStore(make_conf(dest_port, "dest_user"), "destination", max_retries=1, initial_wait=0)
        stores.extend([source, target])
        return src_server, dest_server, source, target

    yield _create

    for store in stores:
        store.close()


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


@contextmanager
def temp_argv(args):
    original = sys.argv[:]
    sys.argv = list(args)
    try:
        yield
    finally:
        sys.argv = original


@pytest.fixture(autouse=True)
def clean_sys_argv():
    """Ensure sys.argv is clean for all tests."""
    original = sys.argv[:]
    sys.argv = ["test_script.py"]
    yield
    sys.argv = original


@pytest.fixture
def mock_oauth_server():
    """Starts a mock OpenID discovery server; yields (base_url, server)."""
    thread, server = start_oauth_server_thread(0)
    host, port = server.server_address
    base_url = f"http://{host}:{port}"

    yield base_url, server

    server.shutdown()
    server.server_close()
    thread.join(timeout=2)


__all__ = [
    "get_free_port",
    "make_conf",
    "make_email",
    "mock_server_factory",
    "single_mock_server",
    "store_pair",
    "mock_oauth_server",
    "temp_env",
    "temp_argv",
]
