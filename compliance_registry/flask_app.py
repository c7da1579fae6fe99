#!/usr/bin/env python3
"""Compliance Registry - Flask Application

Runs the WSGI application under Flask so deployments get Flask's CLI,
development server and middleware hooks. Routing stays in `server.app`.
"""

from __future__ import annotations

import os
import subprocess
import sys
from typing import Any, Dict

from flask import Flask, request

from .config import BASE_DIR, HOST, PORT
from .server import app as wsgi_app
from .server import ensure_bootstrap, init_db as server_init_db

flask_app = Flask(__name__, static_folder=None, template_folder=None)


@flask_app.before_request
def setup_request():
    # Liveness must not depend on the database; /readyz reports bootstrap problems itself.
    if request.path in {"/healthz", "/readyz"}:
        return None
    ensure_bootstrap()
    return None


@flask_app.route("/", defaults={"path": ""}, methods=["GET", "POST"])
@flask_app.route("/<path:path>", methods=["GET", "POST"])
def catch_all(path):
    """Delegate every request to the WSGI application and replay its response."""
    response_data: Dict[str, Any] = {}

    def start_response(status, headers, exc_info=None):
        response_data["status"] = status
        response_data["headers"] = headers
        return lambda s: None

    body = b"".join(wsgi_app(request.environ, start_response))
    status_code = int(response_data.get("status", "200 OK").split()[0])
    response = flask_app.make_response((body, status_code))
    for header_name, header_value in response_data.get("headers", []):
        response.headers[header_name] = header_value
    return response


@flask_app.cli.command()
def init_db():
    """Initialize the database (Flask CLI command)."""
    server_init_db()
    print("Database initialized successfully!")


@flask_app.cli.command()
def run_tests():
    """Run application tests (Flask CLI command)."""
    print("Running tests...")
    result = subprocess.run([sys.executable, "-m", "pytest", "tests/"], cwd=str(BASE_DIR))
    raise SystemExit(result.returncode)


if __name__ == "__main__":
    # Development only; production uses wsgi.py behind gunicorn or waitress.
    flask_app.run(host=HOST, port=PORT, debug=os.environ.get("FLASK_DEBUG", "0") == "1", threaded=True)
