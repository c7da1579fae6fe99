"""Runtime settings for the Compliance Registry.

Every value is read once from the environment at import time. COMPLIANCE_*
variables take precedence; generic container variables (HOST, PORT,
DATABASE_URL) are honoured where a platform injects them.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List

APP_NAME = "Compliance Registry"
APP_TAGLINE = "Sites, equipment, regulatory requirements and recurring compliance tasks"
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"
STATIC_DIR = Path(__file__).resolve().parent / "static"
DB_PATH = Path(os.environ.get("COMPLIANCE_DB_PATH", str(DATA_DIR / "compliance_registry.db")))
DATABASE_URL = os.environ.get("COMPLIANCE_DATABASE_URL", os.environ.get("DATABASE_URL", "")).strip()
DB_BACKEND = "postgres" if DATABASE_URL.startswith(("postgres://", "postgresql://")) else "sqlite"
HOST = os.environ.get("COMPLIANCE_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("COMPLIANCE_PORT", os.environ.get("PORT", "8080")))
WSGI_THREADED = os.environ.get("COMPLIANCE_WSGI_THREADED", "1") == "1"
DB_BUSY_TIMEOUT_MS = max(1000, int(os.environ.get("COMPLIANCE_DB_BUSY_TIMEOUT_MS", "6000")))
DB_JOURNAL_MODE = os.environ.get("COMPLIANCE_DB_JOURNAL_MODE", "WAL").strip().upper()
DB_SYNCHRONOUS = os.environ.get("COMPLIANCE_DB_SYNCHRONOUS", "NORMAL").strip().upper()

# Task lifecycle. "Closed" statuses stop counting toward open work.
TASK_STATUSES = ["open", "assigned", "pending", "submitted", "approved", "rejected", "closed"]
CLOSED_TASK_STATUSES = {"closed", "approved", "rejected"}
OPEN_LIST_STATUSES = ["open", "assigned", "pending", "submitted"]

FREQUENCY_OPTIONS: List[Dict[str, str]] = [
    {"value": "daily", "label": "Daily"},
    {"value": "weekly", "label": "Weekly"},
    {"value": "monthly", "label": "Monthly"},
    {"value": "quarterly", "label": "Quarterly"},
    {"value": "annually", "label": "Annually"},
]

USER_ROLES: List[Dict[str, str]] = [
    {"value": "admin", "label": "Admin"},
    {"value": "inspector", "label": "Inspector"},
    {"value": "viewer", "label": "Viewer"},
    {"value": "user", "label": "User"},
]

NAV_ITEMS: List[Dict[str, str]] = [
    {"key": "sites", "path": "/", "label": "Sites"},
    {"key": "equipment", "path": "/equipment", "label": "Equipment"},
    {"key": "requirements", "path": "/requirements", "label": "Requirements"},
    {"key": "task_templates", "path": "/task-templates", "label": "Task Templates"},
    {"key": "tasks", "path": "/tasks", "label": "Tasks"},
    {"key": "users", "path": "/users", "label": "Users"},
]
