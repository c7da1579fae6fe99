from urllib.parse import unquote

from compliance_registry import data_store as store
from compliance_registry import db, server


def location_message(headers):
    location = headers["Location"]
    return location.split("?", 1)[0], unquote(location.split("msg=", 1)[1]) if "msg=" in location else ""


def test_health_and_readiness(client):
    status, headers, body = client.get("/healthz")
    assert status.startswith("200") and body == "ok"
    status, _, body = client.get("/readyz")
    assert status.startswith("200") and body == "ready"


def test_security_headers_and_static(client):
    status, headers, body = client.get("/static/style.css")
    assert status.startswith("200")
    assert headers["Content-Type"].startswith("text/css")
    assert headers["X-Frame-Options"] == "DENY"
    assert headers["Cache-Control"] == "no-store"
    status, _, _ = client.get("/static/../server.py")
    assert status.startswith("404")


def test_unknown_route_is_404(client):
    status, _, _ = client.get("/nope")
    assert status.startswith("404")


def test_sites_page_and_dashboard(client, seeded):
    status, _, body = client.get("/")
    assert status.startswith("200")
    assert "Bayside Refinery" in body and "Riverbend Chemical" in body

    status, _, body = client.get(f"/sites/{seeded['site']['id']}")
    assert status.startswith("200")
    assert "<p class='stat-value'>3</p>" in body
    assert "<p class='stat-value'>2</p>" in body

    status, _, _ = client.get("/sites/missing")
    assert status.startswith("404")


def test_site_equipment_table_sorts_numerically(client, seeded):
    site_id = seeded["site"]["id"]
    status, _, body = client.get(f"/sites/{site_id}/equipment", sort="asset_tag", dir="asc")
    assert status.startswith("200")
    assert body.index(">P-2<") < body.index(">P-10<") < body.index(">T-1<")
    status, _, body = client.get(f"/sites/{site_id}/equipment", sort="asset_tag", dir="desc")
    assert body.index(">T-1<") < body.index(">P-10<") < body.index(">P-2<")


def test_site_equipment_search_and_filters(client, seeded):
    site_id = seeded["site"]["id"]
    _, _, body = client.get(f"/sites/{site_id}/equipment", q="tank")
    assert ">T-1<" in body and ">P-10<" not in body
    _, _, body = client.get(f"/sites/{site_id}/equipment", f_equipment_type="pump", f_asset_tag="10")
    assert ">P-10<" in body and ">P-2<" not in body
    _, _, body = client.get(f"/sites/{site_id}/equipment", q="no-such-thing")
    assert "No equipment found." in body


def test_create_equipment_with_first_task(client, conn, seeded):
    site_id = seeded["site"]["id"]
    template = seeded["templates"]["annual"]
    status, headers, _ = client.post(
        f"/sites/{site_id}/equipment/new",
        {"asset_tag": "V-100", "description": "Block valve", "task_template_id": template["id"], "due_date": "2026-12-01"},
    )
    assert status.startswith("302")
    path, message = location_message(headers)
    assert message == "Equipment created"
    equipment_id = path.rsplit("/", 1)[1]
    rows = store.get_view_data(conn, equipment_id=equipment_id)
    assert [(r["citation"], r["task_status"], r["due_date"]) for r in rows] == [("40 CFR 60.113b", "open", "2026-12-01")]

    status, _, body = client.get(path)
    assert status.startswith("200")
    assert "Seal inspection" in body


def test_create_equipment_validation(client, seeded):
    site_id = seeded["site"]["id"]
    _, headers, _ = client.post(f"/sites/{site_id}/equipment/new", {"asset_tag": "  "})
    assert location_message(headers) == (f"/sites/{site_id}/equipment/new", "Asset tag is required")
    _, headers, _ = client.post(
        f"/sites/{site_id}/equipment/new",
        {"asset_tag": "X-1", "task_template_id": seeded["templates"]["monthly"]["id"]},
    )
    assert location_message(headers)[1] == "Due date is required when assigning a task"


def test_equipment_detail_edit_and_add_task(client, conn, seeded):
    site_id = seeded["site"]["id"]
    pump = seeded["equipment"]["pump"]
    detail = f"/sites/{site_id}/equipment/{pump['id']}"

    status, _, body = client.get(detail)
    assert status.startswith("200")
    assert "40 CFR 60.482-2" in body and "Method 21 monitoring" in body

    _, headers, _ = client.post(f"{detail}/edit", {"asset_tag": "P-10A", "description": "Charge pump", "equipment_type": ""})
    assert location_message(headers) == (detail, "Equipment updated")
    row = store.get_equipment_by_id(conn, pump["id"])
    assert row["asset_tag"] == "P-10A" and row["equipment_type"] is None

    _, headers, _ = client.post(f"{detail}/tasks", {"task_template_id": "", "due_date": ""})
    assert location_message(headers)[1] == "Task template, equipment, and due date are required"

    alex = seeded["users"]["alex"]
    _, headers, _ = client.post(
        f"{detail}/tasks",
        {"task_template_id": seeded["templates"]["annual"]["id"], "due_date": "12/31/2026", "assigned_to_user_id": alex["id"]},
    )
    assert location_message(headers)[1] == "Task created"
    new_rows = [r for r in store.get_view_data(conn, equipment_id=pump["id"]) if r["citation"] == "40 CFR 60.113b"]
    assert [(r["task_status"], r["due_date"], r["assigned_to_user_id"]) for r in new_rows] == [
        ("assigned", "2026-12-31", alex["id"])
    ]


def test_equipment_from_another_site_is_404(client, seeded):
    pump = seeded["equipment"]["pump"]
    status, _, _ = client.get(f"/sites/{seeded['other_site']['id']}/equipment/{pump['id']}")
    assert status.startswith("404")


def test_all_equipment_page_site_filter(client, seeded):
    status, _, body = client.get("/equipment")
    assert status.startswith("200")
    assert "Search equipment..." in body and ">P-2<" in body
    _, _, body = client.get("/equipment", site_id=seeded["other_site"]["id"])
    assert "No equipment found. Adjust filters or add equipment from a site." in body


def test_requirement_management(client, conn, seeded):
    _, headers, _ = client.post("/requirements/new", {"citation": "40 CFR 63.1026", "requirement_summary": "x", "site_id": "s"})
    assert location_message(headers)[1] == "Regulation name is required"
    _, headers, _ = client.post(
        "/requirements/new",
        {"citation": "40 CFR 63.1026", "regulation_name": "NESHAP UU", "requirement_summary": "Connectors", "site_id": ""},
    )
    assert location_message(headers)[1] == "Site is required"
    _, headers, _ = client.post(
        "/requirements/new",
        {
            "citation": "40 CFR 63.1026",
            "regulation_name": "NESHAP UU",
            "requirement_summary": "Connectors",
            "site_id": seeded["other_site"]["id"],
        },
    )
    assert location_message(headers) == ("/requirements", "Requirement created")

    _, _, body = client.get("/requirements", sort="citation", dir="asc", f_site_name="riverbend")
    assert "40 CFR 63.1026" in body and "Monthly pump monitoring" not in body

    created = next(r for r in store.get_all_requirements(conn) if r["citation"] == "40 CFR 63.1026")
    _, headers, _ = client.post(
        f"/requirements/{created['id']}/edit",
        {
            "citation": "40 CFR 63.1026",
            "regulation_name": "NESHAP UU",
            "requirement_summary": "Quarterly connectors",
            "site_id": seeded["other_site"]["id"],
        },
    )
    assert location_message(headers)[1] == "Requirement updated"
    assert store.get_requirement_by_id(conn, created["id"])["requirement_summary"] == "Quarterly connectors"

    _, headers, _ = client.post(f"/requirements/{created['id']}/delete")
    assert location_message(headers)[1] == "Requirement deleted"
    status, _, _ = client.post(f"/requirements/{created['id']}/delete")
    assert status.startswith("404")


def test_deleting_requirement_with_tasks_reports_error(client, seeded):
    _, headers, _ = client.post(f"/requirements/{seeded['requirements']['ldar']['id']}/delete")
    assert location_message(headers)[1].startswith("Could not delete requirement")


def test_task_template_management(client, conn, seeded):
    _, headers, _ = client.post("/task-templates/new", {"task_name": "", "frequency": "daily"})
    assert location_message(headers)[1] == "Task name is required"
    _, headers, _ = client.post("/task-templates/new", {"task_name": "Check", "frequency": "hourly"})
    assert location_message(headers)[1] == "Frequency is required"
    _, headers, _ = client.post("/task-templates/new", {"task_name": "Check", "frequency": "weekly"})
    assert location_message(headers)[1] == "Requirement is required"
    _, headers, _ = client.post(
        "/task-templates/new",
        {"task_name": "Cooling water sample", "frequency": "weekly", "requirement_id": seeded["requirements"]["ldar"]["id"]},
    )
    assert location_message(headers)[1] == "Task template created"

    _, _, body = client.get("/task-templates", q="cooling")
    assert "Cooling water sample" in body and "Seal inspection" not in body
    assert "Weekly" in body

    template = seeded["templates"]["annual"]
    _, headers, _ = client.post(
        f"/task-templates/{template['id']}/edit",
        {"task_name": "Seal inspection", "frequency": "annually", "requirement_id": template["requirement_id"]},
    )
    assert location_message(headers)[1] == "Task template updated"
    assert store.get_task_template_by_id(conn, template["id"])["active"] == 0


def test_tasks_page_lists_open_tasks(client, seeded):
    status, _, body = client.get("/tasks")
    assert status.startswith("200")
    assert "Search tasks..." in body
    assert f"data-row-key='{seeded['tasks']['open']['id']}'" in body
    assert f"data-row-key='{seeded['tasks']['assigned']['id']}'" in body
    assert f"data-row-key='{seeded['tasks']['closed']['id']}'" not in body

    _, _, body = client.get("/tasks", status="closed")
    assert f"data-row-key='{seeded['tasks']['closed']['id']}'" in body

    _, _, body = client.get("/tasks", assigned_to=seeded["users"]["priya"]["id"])
    assert "No open tasks found. Adjust filters or add tasks." in body

    _, _, body = client.get("/tasks", f_assigned_to="alex")
    assert f"data-row-key='{seeded['tasks']['assigned']['id']}'" in body
    assert f"data-row-key='{seeded['tasks']['open']['id']}'" not in body


def test_assign_task_redirects_back(client, conn, seeded):
    task = seeded["tasks"]["open"]
    priya = seeded["users"]["priya"]
    _, headers, _ = client.post(f"/tasks/{task['id']}/assign", {"user_id": priya["id"], "return_to": "/tasks?sort=due_date&dir=asc"})
    assert headers["Location"].startswith("/tasks?sort=due_date&dir=asc&msg=")
    row = store.get_task_by_id(conn, task["id"])
    assert (row["status"], row["assigned_to_user_id"]) == ("assigned", priya["id"])

    _, headers, _ = client.post(f"/tasks/{task['id']}/assign", {"user_id": "", "return_to": "//evil.example"})
    assert headers["Location"].startswith("/tasks?msg=")
    assert store.get_task_by_id(conn, task["id"])["status"] == "open"

    status, _, _ = client.post("/tasks/missing/assign", {"user_id": ""})
    assert status.startswith("404")


def test_create_task_page(client, conn, seeded):
    status, _, body = client.get("/tasks/new")
    assert status.startswith("200") and "P-10" in body
    _, headers, _ = client.post("/tasks/new", {"equipment_id": seeded["equipment"]["tank"]["id"]})
    assert location_message(headers)[1] == "Task template, equipment, and due date are required"
    _, headers, _ = client.post(
        "/tasks/new",
        {
            "equipment_id": seeded["equipment"]["tank"]["id"],
            "task_template_id": seeded["templates"]["monthly"]["id"],
            "due_date": "2026-10-31",
        },
    )
    assert location_message(headers) == ("/tasks", "Task created")
    citations = {r["citation"] for r in store.get_view_data(conn, equipment_id=seeded["equipment"]["tank"]["id"])}
    assert citations == {"40 CFR 60.113b", "40 CFR 60.482-2"}


def test_users_pages(client, conn, seeded):
    status, _, body = client.get("/users")
    assert status.startswith("200")
    assert "Alex Rivera" in body and "Active" in body
    _, _, body = client.get("/users", site_id=seeded["site"]["id"])
    assert "Alex Rivera" in body and "Priya Shah" not in body

    _, headers, _ = client.post("/users/new", {"name": "Sam", "email": "", "role": "viewer"})
    assert location_message(headers)[1] == "Name, email, and role are required"
    _, headers, _ = client.post("/users/new", {"name": "Sam", "email": "alex@example.com", "role": "viewer"})
    assert location_message(headers)[1] == "Email already exists"
    _, headers, _ = client.post("/users/new", {"name": "Sam Patel", "email": "Sam@Example.com", "role": "viewer"})
    assert location_message(headers) == ("/users", "User created")
    assert store.get_user_by_email(conn, "sam@example.com")["role"] == "viewer"


def test_notice_is_rendered_escaped(client):
    _, _, body = client.get("/users", msg="<b>Saved</b>")
    assert "&lt;b&gt;Saved&lt;/b&gt;" in body


def test_data_errors_render_error_panel(client, monkeypatch):
    def broken(*args, **kwargs):
        raise db.DataStoreError("get_users", "database is locked")

    monkeypatch.setattr(store, "get_users", broken)
    status, _, body = client.get("/users")
    assert status.startswith("200")
    assert "Could not load data" in body and "database is locked" in body


def test_bootstrap_failure_returns_503(client, monkeypatch):
    def failing_init():
        raise RuntimeError("disk full")

    db.reset_bootstrap()
    monkeypatch.setattr(db, "init_db", failing_init)
    status, _, body = client.get("/users")
    assert status.startswith("503")
    assert "disk full" in body
    status, _, body = client.get("/readyz")
    assert status.startswith("503") and body.startswith("not-ready")


def test_assign_task_replaces_previous_notice(client, seeded):
    task = seeded["tasks"]["open"]
    _, headers, _ = client.post(
        f"/tasks/{task['id']}/assign",
        {"user_id": seeded["users"]["priya"]["id"], "return_to": "/tasks?msg=Task+created&sort=due_date&dir=asc"},
    )
    assert headers["Location"].count("msg=") == 1
    assert headers["Location"].startswith("/tasks?sort=due_date&dir=asc&msg=")
    assert location_message(headers) == ("/tasks", "Task assignment updated")

    status, _, body = client.get("/tasks", msg="Task assignment updated")
    assert status.startswith("200") and "Task assignment updated" in body


def test_with_msg_keeps_other_parameters():
    assert server.with_msg("/users", "Saved") == "/users?msg=Saved"
    assert server.with_msg("/users?site_id=s1&msg=Old", "User created") == "/users?site_id=s1&msg=User%20created"


def test_invalid_utf8_form_body_is_decoded_leniently(client, conn):
    status, headers, _ = client.request(
        "/users/new", method="POST", body=b"name=Sam\xff&email=sam%40example.com&role=viewer"
    )
    assert status.startswith("302")
    assert location_message(headers) == ("/users", "User created")
    assert store.get_user_by_email(conn, "sam@example.com")["name"] == "Sam\ufffd"


def test_connection_failure_returns_500_page(client, monkeypatch):
    def refuse():
        raise RuntimeError("connection refused")

    monkeypatch.setattr(server, "db_connect", refuse)
    status, _, body = client.get("/users")
    assert status.startswith("500")
    assert "An unexpected server error occurred." in body
