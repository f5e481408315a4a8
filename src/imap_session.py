"""
IMAP Session Management

Builds connection configs for the source and target stores and keeps
per-thread connections healthy, refreshing OAuth2 tokens before reconnecting.
"""

import imap_common
import imap_oauth2


def build_imap_conf(host, user, password, client_id=None, client_secret=None, label=None):
    """
    Build a standard IMAP connection config dict.

    If client_id is provided, acquires an OAuth2 token (exits on failure).
    Otherwise, builds a password-auth config.

    Args:
        host: IMAP host, optionally as imap://host:port or imaps://host:port
        user: IMAP username / email
        password: IMAP password
        client_id: OAuth2 client ID (triggers OAuth2 flow if provided)
        client_secret: OAuth2 client secret (required for Google)
        label: Context label for status messages ("source" or "target")

    Returns:
        Dict with keys: host, user, password, oauth2_token, oauth2
    """
    oauth2_token = None
    oauth2_info = None

    if client_id:
        oauth2_token, provider = imap_oauth2.acquire_token(host, client_id, user, client_secret, label)
        oauth2_info = {
            "provider": provider,
            "client_id": client_id,
            "email": user,
            "client_secret": client_secret,
        }

    return {
        "host": host,
        "user": user,
        "password": password,
        "oauth2_token": oauth2_token,
        "oauth2": oauth2_info,
    }


def ensure_connection(conn, conf):
    """
    Return a healthy connection for conf, reusing conn when it answers NOOP.

    When the connection has to be rebuilt and the store uses OAuth2, the token
    is refreshed first (MSAL and google-auth only contact the server when the
    cached token is stale). Returns None if reconnection failed.
    """
    if conn is not None and imap_common.is_connection_alive(conn):
        return conn
    if conf.get("oauth2"):
        imap_oauth2.refresh_oauth2_token(conf, conf.get("oauth2_token"))
    return imap_common.get_imap_connection_from_conf(conf)
