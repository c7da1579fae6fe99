import io
from urllib.parse import urlencode

import pytest

from compliance_registry import config, db
from compliance_registry import data_store as store
from compliance_registry.server import app


@pytest.fixture(autouse=True)
def temp_database(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DB_PATH", tmp_path / "registry.db")
    monkeypatch.setattr(config, "DB_BACKEND", "sqlite")
    db.reset_bootstrap()
    db.ensure_bootstrap()
    yield tmp_path / "registry.db"
    db.reset_bootstrap()


@pytest.fixture
def conn(temp_database):
    connection = db.db_connect()
    yield connection
    connection.close()


class WSGIClient:
    """Minimal in-process WSGI caller; no HTTP server involved."""

    def request(self, path, method="GET", query=None, form=None, body=None):
        if body is None:
            body = urlencode(form or {}).encode("utf-8")
        captured = {}

        def start_response(status, headers):
            captured["status"] = status
            captured["headers"] = dict(headers)

        environ = {
            "REQUEST_METHOD": method,
            "PATH_INFO": path,
            "QUERY_STRING": urlencode(query or {}),
            "wsgi.input": io.BytesIO(body),
            "CONTENT_LENGTH": str(len(body)),
            "CONTENT_TYPE": "application/x-www-form-urlencoded",
            "REMOTE_ADDR": "127.0.0.1",
        }
        payload = b"".join(app(environ, start_response))
        return captured["status"], captured["headers"], payload.decode("utf-8")

    def get(self, path, **query):
        return self.request(path, query=query)

    def post(self, path, form=None):
        return self.request(path, method="POST", form=form)


@pytest.fixture
def client():
    return WSGIClient()


@pytest.fixture
def seeded(conn):
    """One site with two requirements, templates, three equipment items, two users and tasks."""
    site = store.create_site(conn, "Bayside Refinery", "Coastal Energy")
    other_site = store.create_site(conn, "Riverbend Chemical", "Riverbend Holdings")
    ldar = store.create_requirement(
        conn,
        {
            "citation": "40 CFR 60.482-2",
            "regulation_name": "NSPS VVa",
            "requirement_summary": "Monthly pump monitoring",
            "site_id": site["id"],
        },
    )
    seals = store.create_requirement(
        conn,
        {
            "citation": "40 CFR 60.113b",
            "regulation_name": "NSPS Kb",
            "requirement_summary": "Annual seal inspection",
            "site_id": site["id"],
        },
    )
    monthly = store.create_task_template(
        conn, {"requirement_id": ldar["id"], "task_name": "Method 21 monitoring", "frequency": "monthly"}
    )
    annual = store.create_task_template(
        conn, {"requirement_id": seals["id"], "task_name": "Seal inspection", "frequency": "annually"}
    )
    pump = store.create_equipment(
        conn, {"asset_tag": "P-10", "description": "Charge pump", "equipment_site_id": site["id"], "equipment_type": "Pump"}
    )
    pump2 = store.create_equipment(
        conn, {"asset_tag": "P-2", "description": "Reflux pump", "equipment_site_id": site["id"], "equipment_type": "Pump"}
    )
    tank = store.create_equipment(
        conn, {"asset_tag": "T-1", "description": "Crude tank", "equipment_site_id": site["id"], "equipment_type": "Tank"}
    )
    alex = store.create_user(conn, "Alex Rivera", "alex@example.com", "inspector", site["id"])
    priya = store.create_user(conn, "Priya Shah", "priya@example.com", "admin")

    store.ensure_equipment_requirement(conn, pump["id"], ldar["id"])
    store.ensure_equipment_requirement(conn, pump2["id"], ldar["id"])
    store.ensure_equipment_requirement(conn, tank["id"], seals["id"])
    open_task = store.create_task(conn, monthly["id"], pump["id"], "2026-11-01")
    assigned_task = store.create_task(conn, monthly["id"], pump2["id"], "2026-11-15", "assigned", alex["id"])
    closed_task = store.create_task(conn, annual["id"], tank["id"], "2026-01-01", "closed")
    return {
        "site": site,
        "other_site": other_site,
        "requirements": {"ldar": ldar, "seals": seals},
        "templates": {"monthly": monthly, "annual": annual},
        "equipment": {"pump": pump, "pump2": pump2, "tank": tank},
        "users": {"alex": alex, "priya": priya},
        "tasks": {"open": open_task, "assigned": assigned_task, "closed": closed_task},
    }
