"""
IMAP OAuth2 Authentication

XOAUTH2 token acquisition and refresh for the source and target accounts.

- Microsoft accounts use the MSAL device code flow (`msal` package). The tenant
  is discovered from the e-mail domain through the OpenID configuration endpoint.
- Google accounts use the installed-app flow (`google-auth-oauthlib` package),
  which opens a browser and listens on a local redirect.

The provider is detected from the IMAP host. Applications and credentials are
cached in memory so later refreshes are silent.
"""

import http.client
import json
import os
import re
import ssl
import sys
import threading
import urllib.parse

PROVIDER_MICROSOFT = "microsoft"
PROVIDER_GOOGLE = "google"

MICROSOFT_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]
GOOGLE_SCOPES = ["https://mail.google.com/"]

_TENANT_PATTERN = re.compile(r"/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})")

# Module-level caches for silent refresh
_msal_app_cache = {}  # (client_id, tenant_id) -> PublicClientApplication
_tenant_cache = {}  # domain -> tenant_id
_google_creds_cache = {}  # (client_id, client_secret) -> credentials
_token_refresh_lock = threading.Lock()


def detect_oauth2_provider(host):
    """
    Detects the OAuth2 provider from the IMAP host.
    Returns "microsoft", "google", or None if unrecognized.
    """
    host_lower = host.lower()
    if "outlook" in host_lower or "office365" in host_lower or "microsoft" in host_lower:
        return PROVIDER_MICROSOFT
    if "gmail" in host_lower or "google" in host_lower:
        return PROVIDER_GOOGLE
    return None


def _fetch_json(base, path, timeout=10):
    if not base or any(ch in base for ch in "\r\n"):
        raise ValueError("Invalid host")
    if not path.startswith("/"):
        path = f"/{path}"

    use_https = True
    host = base
    if "://" in base:
        parsed = urllib.parse.urlparse(base)
        if not parsed.hostname:
            raise ValueError("Invalid host")
        host = f"{parsed.hostname}:{parsed.port}" if parsed.port else parsed.hostname
        path = parsed.path.rstrip("/") + path
        use_https = parsed.scheme == "https"

    if use_https:
        conn = http.client.HTTPSConnection(host, timeout=timeout, context=ssl.create_default_context())
    else:
        conn = http.client.HTTPConnection(host, timeout=timeout)
    try:
        conn.request("GET", path, headers={"Accept": "application/json"})
        response = conn.getresponse()
        body = response.read()
    finally:
        conn.close()

    if response.status != 200:
        raise RuntimeError(f"Unexpected HTTP status {response.status}")
    return json.loads(body.decode("utf-8"))


def discover_microsoft_tenant(email):
    """
    Returns the Microsoft tenant ID for the domain of ``email``, or None.
    Results are cached per domain.
    """
    domain = email.split("@")[-1].strip().lower()
    if not domain:
        print("Error: Could not discover Microsoft tenant: missing email domain")
        return None
    if domain in _tenant_cache:
        return _tenant_cache[domain]

    discovery_base = os.getenv("OAUTH2_MICROSOFT_DISCOVERY_URL") or "login.microsoftonline.com"
    path = f"/{urllib.parse.quote(domain, safe='.-')}/.well-known/openid-configuration"
    try:
        data = _fetch_json(discovery_base, path)
    except (OSError, http.client.HTTPException, RuntimeError, ValueError) as e:
        print(f"Error: Could not discover Microsoft tenant for domain '{domain}': {e}")
        return None

    issuer = data.get("issuer", "")
    match = _TENANT_PATTERN.search(issuer)
    if not match:
        print(f"Error: Could not extract tenant ID from issuer: {issuer}")
        return None
    _tenant_cache[domain] = match.group(1)
    return match.group(1)


def acquire_microsoft_oauth2_token(client_id, email):
    """
    Acquires a Microsoft access token, silently when the cached MSAL app still
    holds a refresh token, through the device code flow otherwise.
    """
    tenant_id = discover_microsoft_tenant(email)
    if not tenant_id:
        return None

    try:
        import msal
    except ImportError:
        print("Error: 'msal' package is required for Microsoft OAuth2. Install it with: pip install msal")
        sys.exit(1)

    cache_key = (client_id, tenant_id)
    app = _msal_app_cache.get(cache_key)
    if app is None:
        authority_base = os.getenv("OAUTH2_MICROSOFT_AUTHORITY_BASE_URL") or "https://login.microsoftonline.com"
        print(f"Discovered Microsoft tenant: {tenant_id}")
        app = msal.PublicClientApplication(client_id, authority=f"{authority_base.rstrip('/')}/{tenant_id}")
        _msal_app_cache[cache_key] = app

    accounts = app.get_accounts()
    if accounts:
        result = app.acquire_token_silent(MICROSOFT_SCOPES, account=accounts[0])
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=MICROSOFT_SCOPES)
    if "user_code" not in flow:
        print(f"Error: Could not initiate device flow: {flow.get('error_description', 'Unknown error')}")
        return None

    print(flow["message"])
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" in result:
        return result["access_token"]

    print(f"Error: Could not acquire token: {result.get('error_description', 'Unknown error')}")
    return None


def acquire_google_oauth2_token(client_id, client_secret):
    """
    Acquires a Google access token, refreshing cached credentials when possible
    and falling back to the browser consent flow.
    """
    cache_key = (client_id, client_secret)
    creds = _google_creds_cache.get(cache_key)
    if creds is not None and creds.refresh_token:
        try:
            import google.auth.transport.requests

            creds.refresh(google.auth.transport.requests.Request())
            if creds.token:
                return creds.token
        except Exception as e:
            print(f"Warning: Google token refresh failed, re-authenticating: {e}")

    try:
        from google_auth_oauthlib.flow import InstalledAppFlow
    except ImportError:
        print("Error: 'google-auth-oauthlib' package is required for Google OAuth2.")
        print("Install it with: pip install google-auth-oauthlib")
        sys.exit(1)

    client_config = {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": os.getenv("OAUTH2_GOOGLE_AUTH_URL") or "https://accounts.google.com/o/oauth2/auth",
            "token_uri": os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }
    flow = InstalledAppFlow.from_client_config(client_config, scopes=GOOGLE_SCOPES)

    print("Opening browser for Google authentication...")
    print("If the browser does not open, check the terminal for a URL to visit.")
    credentials = flow.run_local_server(port=0)

    if credentials and credentials.token:
        _google_creds_cache[cache_key] = credentials
        return credentials.token

    print("Error: Could not acquire Google OAuth2 token.")
    return None


def acquire_oauth2_token_for_provider(provider, client_id, email, client_secret=None):
    if provider == PROVIDER_MICROSOFT:
        return acquire_microsoft_oauth2_token(client_id, email)
    if provider == PROVIDER_GOOGLE:
        if not client_secret:
            print(
                "Error: OAuth2 client secret is required for Google OAuth2. "
                "Provide --src-oauth2-client-secret / --dest-oauth2-client-secret, "
                "or set SRC_OAUTH2_CLIENT_SECRET / DEST_OAUTH2_CLIENT_SECRET."
            )
            return None
        return acquire_google_oauth2_token(client_id, client_secret)
    print(f"Error: Unknown OAuth2 provider: {provider}")
    return None


def acquire_token(host, client_id, email, client_secret=None, label=None):
    """
    Detect the OAuth2 provider from the host and acquire a token.

    Exits the process with status 1 when no token can be obtained, since
    neither store can be opened without one.

    Returns:
        (token, provider) tuple.
    """
    provider = detect_oauth2_provider(host)
    if not provider:
        print(f"Error: Could not detect OAuth2 provider from host '{host}'.")
        sys.exit(1)

    subject = f" for {label}" if label else ""
    print(f"Acquiring OAuth2 token{subject} ({provider})...")
    token = acquire_oauth2_token_for_provider(provider, client_id, email, client_secret)
    if not token:
        print(f"Error: Failed to acquire OAuth2 token{subject}.")
        sys.exit(1)
    print(f"OAuth2 token{subject} acquired successfully.\n")
    return token, provider


def auth_description(provider):
    """Human-readable auth method for config summaries."""
    if provider:
        return f"OAuth2/{provider} (XOAUTH2)"
    return "Basic (password)"


def refresh_oauth2_token(conf, old_token):
    """
    Thread-safe token refresh using double-checked locking.

    Workers of the same store share one conf dict. The first thread to take the
    lock refreshes; threads that were waiting see conf["oauth2_token"] already
    changed and reuse it.

    Returns the current token, or None if refresh failed.
    """
    oauth2 = conf.get("oauth2")
    if not oauth2:
        return None

    with _token_refresh_lock:
        if conf["oauth2_token"] != old_token:
            return conf["oauth2_token"]

        new_token = acquire_oauth2_token_for_provider(
            oauth2["provider"], oauth2["client_id"], oauth2["email"], oauth2.get("client_secret")
        )
        if new_token:
            conf["oauth2_token"] = new_token
        return new_token
