import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import urlparse

MOCK_TENANT_ID = "00000000-0000-0000-0000-000000000000"
WELL_KNOWN_SUFFIX = "/.well-known/openid-configuration"


def _write_json(handler, status, payload):
    body = json.dumps(payload).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


class MockOAuthHandler(BaseHTTPRequestHandler):
    """OpenID discovery endpoint answering per e-mail domain."""

    def do_GET(self):
        self.server.requests.append(self.path)
        parsed = urlparse(self.path)
        if not parsed.path.endswith(WELL_KNOWN_SUFFIX):
            _write_json(self, 404, {"error": "not_found"})
            return

        domain = parsed.path[: -len(WELL_KNOWN_SUFFIX)].strip("/")
        if domain in self.server.unknown_domains:
            _write_json(self, 400, {"error": "invalid_tenant"})
            return
        tenant_id = self.server.tenants.get(domain, MOCK_TENANT_ID)
        _write_json(self, 200, {"issuer": f"https://login.microsoftonline.com/{tenant_id}/v2.0"})

    def log_message(self, _format, *_args):
        # Silence default HTTP server logging during tests.
        return


class MockOAuthServer(HTTPServer):
    allow_reuse_address = True

    def __init__(self, server_address, handler_class):
        super().__init__(server_address, handler_class)
        self.tenants = {}
        self.unknown_domains = set()
        self.requests = []


def start_server_thread(port=0):
    server = MockOAuthServer(("localhost", port), MockOAuthHandler)
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()
    return thread, server
