#!/usr/bin/env python3
"""Fast health smoke test for local/dev CI.

Uses in-process WSGI calls (no real HTTP server needed) against the
configured database.
"""

import io
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from compliance_registry.server import app, ensure_bootstrap

PAGES = ["/", "/equipment", "/requirements", "/task-templates", "/tasks", "/users"]


def run_request(path="/healthz", method="GET", query="", body=b""):
    """Execute a minimal WSGI request against the app callable."""
    status_holder = {}

    def start_response(status, headers):
        status_holder["status"] = status
        status_holder["headers"] = headers

    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "QUERY_STRING": query,
        "wsgi.input": io.BytesIO(body),
        "CONTENT_LENGTH": str(len(body)),
        "CONTENT_TYPE": "application/x-www-form-urlencoded",
        "REMOTE_ADDR": "127.0.0.1",
        "HTTP_USER_AGENT": "smoke-test",
    }

    chunks = app(environ, start_response)
    payload = b"".join(chunks)
    return status_holder["status"], payload.decode("utf-8", errors="ignore")


if __name__ == "__main__":
    ensure_bootstrap()
    status, body = run_request("/healthz")
    assert status.startswith("200"), f"health failed: {status}"
    assert "ok" in body.lower(), "health payload missing"
    status, body = run_request("/readyz")
    assert status.startswith("200"), f"readiness failed: {status} {body}"
    for page in PAGES:
        status, body = run_request(page, query="sort=asset_tag&dir=desc")
        assert status.startswith("200"), f"{page} failed: {status}"
        assert "Could not load data" not in body, f"{page} rendered a data error"
    print("SMOKE_OK")
