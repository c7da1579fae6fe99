#!/usr/bin/env python3
"""Compliance Registry

Server-rendered admin app for tracking which regulatory requirements apply to
which equipment at each site, and the recurring compliance tasks they create.
Every list page is a sortable, filterable table driven by
`table_engine.TableEngine` with its state carried in the query string.
"""

from __future__ import annotations

import datetime as dt
import html
import re
import traceback
from socketserver import ThreadingMixIn
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import parse_qs, quote, urlencode
from wsgiref.simple_server import WSGIServer, make_server

from . import config
from . import data_store as store
from .config import (
    APP_NAME,
    APP_TAGLINE,
    FREQUENCY_OPTIONS,
    NAV_ITEMS,
    OPEN_LIST_STATUSES,
    STATIC_DIR,
    TASK_STATUSES,
    USER_ROLES,
)
from .db import DataStoreError, db_connect, ensure_bootstrap, init_db
from .table_engine import PLACEHOLDER, ActionColumn, Column, TableEngine, render_table

__all__ = ["app", "run", "init_db", "ensure_bootstrap"]

SITE_ROUTE = re.compile(r"^/sites/([^/]+)$")
SITE_EQUIPMENT_ROUTE = re.compile(r"^/sites/([^/]+)/equipment$")
SITE_EQUIPMENT_NEW_ROUTE = re.compile(r"^/sites/([^/]+)/equipment/new$")
EQUIPMENT_ROUTE = re.compile(r"^/sites/([^/]+)/equipment/([^/]+)(?:/(edit|tasks))?$")
REQUIREMENT_ACTION_ROUTE = re.compile(r"^/requirements/([^/]+)/(edit|delete)$")
TEMPLATE_ACTION_ROUTE = re.compile(r"^/task-templates/([^/]+)/(edit|delete)$")
TASK_ASSIGN_ROUTE = re.compile(r"^/tasks/([^/]+)/assign$")


def h(value: object) -> str:
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


def parse_date(value: str) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%Y/%m/%d"):
        try:
            return dt.datetime.strptime(value, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def with_msg(path: str, message: str) -> str:
    """Append the flash notice, replacing any `msg` the path already carries."""
    base, _, query = path.partition("?")
    kept = [part for part in query.split("&") if part and part.split("=", 1)[0] != "msg"]
    kept.append(f"msg={quote(message)}")
    return f"{base}?{'&'.join(kept)}"


def safe_return_path(value: str, default: str) -> str:
    # Only same-site absolute paths; "//host" would be protocol-relative.
    if value.startswith("/") and not value.startswith("//"):
        return value
    return default


class Request:
    """Thin wrapper over WSGI environ with lazy form parsing.

    Forms are posted as application/x-www-form-urlencoded; blank values are
    kept so a cleared field reaches the handler as "".
    """

    def __init__(self, environ: dict):
        self.environ = environ
        self.method = environ.get("REQUEST_METHOD", "GET").upper()
        self.path = environ.get("PATH_INFO", "/") or "/"
        self.query_string = environ.get("QUERY_STRING", "")
        self.query = {k: v[0] for k, v in parse_qs(self.query_string).items()}
        self._form: Optional[Dict[str, str]] = None

    @property
    def form(self) -> Dict[str, str]:
        if self._form is None:
            self._form = self._parse_form_data()
        return self._form

    def _parse_form_data(self) -> Dict[str, str]:
        if self.method not in {"POST", "PUT", "PATCH"}:
            return {}
        try:
            length = int(self.environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        body = self.environ["wsgi.input"].read(length).decode("utf-8", errors="replace") if length else ""
        parsed = parse_qs(body, keep_blank_values=True)
        return {k: v[0] for k, v in parsed.items()}

    @property
    def full_path(self) -> str:
        return f"{self.path}?{self.query_string}" if self.query_string else self.path


class Response:
    """Simple response object that centralizes security headers."""

    def __init__(
        self,
        body: str = "",
        status: str = "200 OK",
        content_type: str = "text/html; charset=utf-8",
        headers: Optional[List[Tuple[str, str]]] = None,
    ):
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        self.status = status
        self.content_type = content_type
        self.headers = headers or []

    def wsgi(self, start_response):
        sec_headers = [
            ("Content-Type", self.content_type),
            ("X-Frame-Options", "DENY"),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "strict-origin-when-cross-origin"),
            ("Cache-Control", "no-store"),
            (
                "Content-Security-Policy",
                "default-src 'self'; style-src 'self'; script-src 'self'; base-uri 'self'; form-action 'self'",
            ),
        ]
        start_response(self.status, sec_headers + self.headers)
        return [self.body]


def redirect(location: str) -> Response:
    return Response("", status="302 Found", headers=[("Location", location)])


def not_found(what: str = "Page") -> Response:
    return Response(f"<h1>404 Not Found</h1><p>{h(what)} not found.</p>", status="404 Not Found")


class ThreadedWSGIServer(ThreadingMixIn, WSGIServer):
    """Thread-per-request WSGI server for the development runner."""

    daemon_threads = True


# Layout --------------------------------------------------------------------


def nav_link(path: str, label: str, current: str) -> str:
    if path == "/":
        active = current == "/" or current.startswith("/sites")
    else:
        active = current.startswith(path)
    cls = "nav-link active" if active else "nav-link"
    aria = ' aria-current="page"' if active else ""
    return f'<a class="{cls}" href="{h(path)}"{aria}>{h(label)}</a>'


def render_layout(title: str, content: str, req: Request, notice: str = "") -> str:
    nav = "".join(nav_link(item["path"], item["label"], req.path) for item in NAV_ITEMS)
    alert = f"<div class='notice' role='status' aria-live='polite'>{h(notice)}</div>" if notice else ""
    return f"""
    <!doctype html>
    <html lang="en">
      <head>
        <meta charset="utf-8" />
        <meta name="viewport" content="width=device-width,initial-scale=1" />
        <title>{h(title)} | {h(APP_NAME)}</title>
        <link rel="stylesheet" href="/static/style.css" />
      </head>
      <body>
        <a class="skip-link" href="#main-content">Skip to main content</a>
        <div class="app-shell">
          <aside class="sidebar" aria-label="Primary Navigation">
            <div class="sidebar-brand">
              <h1><a class="brand-link" href="/">{h(APP_NAME)}</a></h1>
              <p>{h(APP_TAGLINE)}</p>
            </div>
            <nav class="side-nav" aria-label="Primary">{nav}</nav>
          </aside>
          <section class="main-shell">
            <header class="topbar"><h2>{h(title)}</h2></header>
            {alert}
            <main id="main-content" tabindex="-1">{content}</main>
          </section>
        </div>
      </body>
    </html>
    """


def render_error_panel(exc: DataStoreError) -> str:
    return f"""
    <section class='card error-panel' role='alert'>
      <h3>Could not load data</h3>
      <p>{h(exc.message)}</p>
    </section>
    """


def render_page(title: str, req: Request, notice: str, render: Callable[[], str]) -> Response:
    """Render a page body; Data Store failures become an in-page error panel."""
    try:
        content = render()
    except DataStoreError as exc:
        content = render_error_panel(exc)
    return Response(render_layout(title, content, req, notice))


def select_options(
    items: Sequence[Mapping[str, Any]],
    selected: Optional[str] = None,
    value_key: str = "value",
    label: Callable[[Mapping[str, Any]], str] = lambda item: str(item.get("label") or ""),
    blank: Optional[str] = None,
) -> str:
    parts = [f"<option value=''>{h(blank)}</option>"] if blank is not None else []
    for item in items:
        value = str(item.get(value_key) or "")
        mark = " selected" if selected is not None and value == str(selected) else ""
        parts.append(f"<option value='{h(value)}'{mark}>{h(label(item))}</option>")
    return "".join(parts)


def site_options(sites: Sequence[Mapping[str, Any]], selected: Optional[str] = None, blank: Optional[str] = None) -> str:
    return select_options(sites, selected, "id", lambda s: str(s.get("name") or ""), blank)


def user_options(users: Sequence[Mapping[str, Any]], selected: Optional[str] = None, blank: Optional[str] = "Unassigned") -> str:
    return select_options(users, selected, "id", lambda u: str(u.get("name") or ""), blank)


def template_options(templates: Sequence[Mapping[str, Any]], selected: Optional[str] = None) -> str:
    return select_options(
        templates,
        selected,
        "id",
        lambda t: f"{t.get('task_name') or ''} ({t.get('citation') or PLACEHOLDER})",
        "Select a task template",
    )


def link(path: str, label: str, cls: str = "") -> str:
    return f"<a class='{h(cls)}' href='{h(path)}'>{h(label)}</a>"


# Sites -----------------------------------------------------------------------


def render_sites_page(conn) -> str:
    sites = store.get_sites(conn)
    cards = "".join(
        f"""
        <article class='card site-card'>
          <h3>{link(f"/sites/{s['id']}", s['name'])}</h3>
          <p class='muted'>{h(s['client_name'] or PLACEHOLDER)}</p>
        </article>
        """
        for s in sites
    )
    if not cards:
        cards = "<div class='card empty-state'>No active sites yet. Load sample data or add sites to the database.</div>"
    return f"<section class='site-grid'>{cards}</section>"


def render_site_dashboard(conn, site: Mapping[str, Any]) -> str:
    equipment = store.get_equipment_for_site(conn, site["id"])
    open_tasks = store.count_open_tasks(store.get_view_data(conn, site_id=site["id"]))
    base = f"/sites/{site['id']}"
    return f"""
    <section class='card'>
      <h3>{h(site['name'])}</h3>
      <p class='muted'>{h(site['client_name'] or '')}</p>
    </section>
    <section class='stat-grid'>
      <article class='card stat'><p class='stat-label'>Equipment</p><p class='stat-value'>{len(equipment)}</p>
        {link(f"{base}/equipment", "View equipment")}</article>
      <article class='card stat'><p class='stat-label'>Open tasks</p><p class='stat-value'>{open_tasks}</p>
        {link("/tasks?" + urlencode({"site_id": site["id"]}), "View tasks")}</article>
    </section>
    <p>{link(f"{base}/equipment/new", "Add equipment", "btn")}</p>
    """


# Equipment -------------------------------------------------------------------


def _equipment_columns(include_site: bool = False) -> List[Column[Dict[str, Any]]]:
    columns: List[Column[Dict[str, Any]]] = [
        Column("asset_tag", "Asset Tag", lambda r: r.get("asset_tag"), filterable=True),
        Column("equipment_description", "Description", lambda r: r.get("equipment_description"), filterable=True),
        Column("equipment_type", "Type", lambda r: r.get("equipment_type"), filterable=True),
        Column("process_unit", "Process Unit", lambda r: r.get("process_unit"), filterable=True),
        Column("regulation_name", "Regulation", lambda r: r.get("regulation_name"), filterable=True),
        Column("requirements", "Requirements", lambda r: ", ".join(r.get("requirements") or []), filterable=True),
    ]
    if include_site:
        columns.insert(1, Column("site_name", "Site", lambda r: r.get("site_name"), filterable=True))
    return columns


def render_site_equipment_page(conn, site: Mapping[str, Any], req: Request) -> str:
    rows = store.get_equipment_for_site(conn, site["id"])
    columns = _equipment_columns()
    columns.append(Column("open_task_count", "Open Tasks", lambda r: r.get("open_task_count"), cell_class="num"))
    engine = TableEngine.from_query(columns, rows, lambda r: r["equipment_id"], req.query)
    base = f"/sites/{site['id']}/equipment"
    table = render_table(
        engine,
        base,
        req.query,
        action_column=ActionColumn(lambda r: link(f"{base}/{r['equipment_id']}", "View details")),
        empty_message="No equipment found. Adjust filters or add equipment.",
        search_placeholder="Search equipment...",
    )
    return f"""
    <section class='page-head'>
      <p>{link(f"/sites/{site['id']}", f"Back to {site['name']}")}</p>
      {link(f"{base}/new", "Add equipment", "btn")}
    </section>
    {table}
    """


def render_all_equipment_page(conn, req: Request) -> str:
    site_id = req.query.get("site_id", "")
    sites = store.get_sites(conn)
    rows = store.get_all_equipment(conn, site_id or None)
    engine = TableEngine.from_query(_equipment_columns(include_site=True), rows, lambda r: r["equipment_id"], req.query)
    table = render_table(
        engine,
        "/equipment",
        req.query,
        action_column=ActionColumn(
            lambda r: link(f"/sites/{r['equipment_site_id']}/equipment/{r['equipment_id']}", "View details")
        ),
        empty_message="No equipment found. Adjust filters or add equipment from a site.",
        search_placeholder="Search equipment...",
    )
    return f"""
    <form method='get' action='/equipment' class='inline page-filters'>
      <label>Site <select name='site_id'>{site_options(sites, site_id, "All sites")}</select></label>
      <button type='submit' class='btn ghost'>Apply</button>
    </form>
    {table}
    """


def _equipment_field_inputs(values: Mapping[str, Any]) -> str:
    labels = {
        "sap_equipment_number": "SAP equipment number",
        "sort_field": "Sort field",
        "functional_loc": "Functional location",
        "location_description": "Location description",
        "equipment_type": "Equipment type",
        "equipment_subtype": "Equipment subtype",
        "process_unit": "Process unit",
        "area_location": "Area location",
        "regulation_name": "Regulation name",
    }
    return "".join(
        f"<label>{h(labels[name])} <input name='{name}' value='{h(values.get(name) or '')}' /></label>"
        for name in store.EQUIPMENT_OPTIONAL_FIELDS
    )


def render_equipment_new_page(conn, site: Mapping[str, Any]) -> str:
    templates = store.get_task_templates_for_site(conn, site["id"])
    base = f"/sites/{site['id']}/equipment"
    return f"""
    <section class='card'>
      <p>{link(base, "Back to equipment")}</p>
      <form method='post' action='{h(base)}/new' class='stack-form'>
        <label>Asset tag <input name='asset_tag' required /></label>
        <label>Description <input name='description' /></label>
        {_equipment_field_inputs({})}
        <fieldset>
          <legend>First task (optional)</legend>
          <label>Task template <select name='task_template_id'>{template_options(templates)}</select></label>
          <label>Due date <input type='date' name='due_date' /></label>
        </fieldset>
        <button type='submit'>Create equipment</button>
      </form>
    </section>
    """


def render_equipment_detail(conn, site: Mapping[str, Any], equipment: Mapping[str, Any]) -> str:
    templates = store.get_task_templates_for_site(conn, site["id"])
    users = store.get_users(conn)
    user_names = {u["id"]: u["name"] for u in users}
    requirements = store.group_requirements_with_tasks(store.get_equipment_detail(conn, equipment["id"]))
    base = f"/sites/{site['id']}/equipment/{equipment['id']}"

    sections = []
    for req_entry in requirements:
        task_items = "".join(
            f"""
            <li>
              <strong>{h(t['task_name'])}</strong>
              <span class='pill'>{h(t['task_status'])}</span>
              <span class='muted'>Due {h(t['due_date'] or PLACEHOLDER)}</span>
              <span class='muted'>{h(user_names.get(t['assigned_to_user_id'], 'Unassigned'))}</span>
            </li>
            """
            for t in req_entry["tasks"]
        ) or "<li class='muted'>No tasks for this requirement.</li>"
        sections.append(
            f"""
            <article class='card requirement-block'>
              <h4>{h(req_entry['citation'])}</h4>
              <p>{h(req_entry['requirement_summary'])}</p>
              <ul class='task-list'>{task_items}</ul>
            </article>
            """
        )
    requirements_html = "".join(sections) or "<div class='card empty-state'>No requirements mapped to this equipment yet.</div>"

    return f"""
    <section class='page-head'>
      <p>{link(f"/sites/{site['id']}/equipment", f"Back to {site['name']} equipment")}</p>
    </section>
    <section class='two'>
      <div class='card'>
        <h3>Edit equipment</h3>
        <form method='post' action='{h(base)}/edit' class='stack-form'>
          <label>Asset tag <input name='asset_tag' required value='{h(equipment['asset_tag'])}' /></label>
          <label>Description <input name='description' value='{h(equipment['description'])}' /></label>
          {_equipment_field_inputs(equipment)}
          <button type='submit'>Save changes</button>
        </form>
      </div>
      <div class='card'>
        <h3>Add task</h3>
        <form method='post' action='{h(base)}/tasks' class='stack-form'>
          <label>Task template <select name='task_template_id' required>{template_options(templates)}</select></label>
          <label>Due date <input type='date' name='due_date' required /></label>
          <label>Assign to <select name='assigned_to_user_id'>{user_options(users)}</select></label>
          <button type='submit'>Add task</button>
        </form>
      </div>
    </section>
    <section>
      <h3>Requirements and tasks</h3>
      {requirements_html}
    </section>
    """


def equipment_fields_from_form(form: Mapping[str, str]) -> Dict[str, str]:
    fields = {name: form[name] for name in store.EQUIPMENT_OPTIONAL_FIELDS if name in form}
    fields["asset_tag"] = form.get("asset_tag", "").strip()
    fields["description"] = form.get("description", "").strip()
    return fields


def add_task_for_equipment(
    conn,
    equipment_id: str,
    template: Mapping[str, Any],
    due_date: str,
    assigned_to_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a task and make sure its requirement is mapped to the equipment."""
    store.ensure_equipment_requirement(conn, equipment_id, template["requirement_id"])
    return store.create_task(
        conn,
        template["id"],
        equipment_id,
        due_date,
        status="assigned" if assigned_to_user_id else "open",
        assigned_to_user_id=assigned_to_user_id or None,
    )


# Requirements ------------------------------------------------------------


def _requirement_form_fields(values: Mapping[str, Any], sites: Sequence[Mapping[str, Any]]) -> str:
    return f"""
    <label>Citation <input name='citation' required value='{h(values.get('citation') or '')}' /></label>
    <label>Regulation name <input name='regulation_name' required list='regulation-names' value='{h(values.get('regulation_name') or '')}' /></label>
    <label>Requirement summary <input name='requirement_summary' required value='{h(values.get('requirement_summary') or '')}' /></label>
    <label>Requirement text <textarea name='requirement_text'>{h(values.get('requirement_text') or '')}</textarea></label>
    <label>Site <select name='site_id' required>{site_options(sites, values.get('site_id'), "Select a site")}</select></label>
    """


def validate_requirement_form(form: Mapping[str, str]) -> str:
    if not form.get("citation", "").strip():
        return "Citation is required"
    if not form.get("regulation_name", "").strip():
        return "Regulation name is required"
    if not form.get("requirement_summary", "").strip():
        return "Requirement summary is required"
    if not form.get("site_id", "").strip():
        return "Site is required"
    return ""


def render_requirements_page(conn, req: Request) -> str:
    rows = store.get_requirements_with_sites(conn)
    sites = store.get_sites(conn)
    regulation_names = store.get_unique_regulation_names(conn)
    columns: List[Column[Dict[str, Any]]] = [
        Column("citation", "Citation", lambda r: r.get("citation"), filterable=True),
        Column("regulation_name", "Regulation", lambda r: r.get("regulation_name"), filterable=True),
        Column("requirement_summary", "Summary", lambda r: r.get("requirement_summary"), filterable=True),
        Column("site_name", "Site", lambda r: r.get("site_name"), filterable=True),
    ]

    def actions(r: Dict[str, Any]) -> str:
        return f"""
        <details class='row-editor'>
          <summary>Edit</summary>
          <form method='post' action='/requirements/{h(r['id'])}/edit' class='stack-form'>
            {_requirement_form_fields(r, sites)}
            <button type='submit'>Save</button>
          </form>
        </details>
        <form method='post' action='/requirements/{h(r['id'])}/delete' class='inline'>
          <button type='submit' class='btn danger'>Delete</button>
        </form>
        """

    engine = TableEngine.from_query(columns, rows, lambda r: r["id"], req.query)
    table = render_table(
        engine,
        "/requirements",
        req.query,
        action_column=ActionColumn(actions),
        empty_message="No requirements found. Adjust filters or add a requirement.",
        search_placeholder="Search requirements...",
    )
    datalist = "".join(f"<option value='{h(name)}'></option>" for name in regulation_names)
    return f"""
    <datalist id='regulation-names'>{datalist}</datalist>
    <section class='card'>
      <details>
        <summary>Add requirement</summary>
        <form method='post' action='/requirements/new' class='stack-form'>
          {_requirement_form_fields({}, sites)}
          <button type='submit'>Create requirement</button>
        </form>
      </details>
    </section>
    {table}
    """


# Task templates ----------------------------------------------------------


def _template_form_fields(values: Mapping[str, Any], requirements: Sequence[Mapping[str, Any]]) -> str:
    requirement_opts = select_options(
        requirements,
        values.get("requirement_id"),
        "id",
        lambda r: f"{r.get('citation') or ''} {r.get('requirement_summary') or ''}".strip(),
        "Select a requirement",
    )
    return f"""
    <label>Task name <input name='task_name' required value='{h(values.get('task_name') or '')}' /></label>
    <label>Description <textarea name='task_description'>{h(values.get('task_description') or '')}</textarea></label>
    <label>Frequency <select name='frequency' required>{select_options(FREQUENCY_OPTIONS, values.get('frequency'), blank="Select a frequency")}</select></label>
    <label>Requirement <select name='requirement_id' required>{requirement_opts}</select></label>
    """


def validate_template_form(form: Mapping[str, str]) -> str:
    if not form.get("task_name", "").strip():
        return "Task name is required"
    if form.get("frequency", "") not in {opt["value"] for opt in FREQUENCY_OPTIONS}:
        return "Frequency is required"
    if not form.get("requirement_id", "").strip():
        return "Requirement is required"
    return ""


def render_task_templates_page(conn, req: Request) -> str:
    rows = store.get_all_task_templates(conn)
    requirements = store.get_all_requirements(conn)
    frequency_labels = {opt["value"]: opt["label"] for opt in FREQUENCY_OPTIONS}
    columns: List[Column[Dict[str, Any]]] = [
        Column("task_name", "Task", lambda r: r.get("task_name"), filterable=True),
        Column("citation", "Citation", lambda r: r.get("citation"), filterable=True),
        Column("requirement_summary", "Requirement", lambda r: r.get("requirement_summary"), filterable=True),
        Column("frequency", "Frequency", lambda r: frequency_labels.get(r.get("frequency"), r.get("frequency")), filterable=True),
        Column("active", "Status", lambda r: "Active" if r.get("active") else "Inactive", filterable=True),
    ]

    def actions(r: Dict[str, Any]) -> str:
        return f"""
        <details class='row-editor'>
          <summary>Edit</summary>
          <form method='post' action='/task-templates/{h(r['id'])}/edit' class='stack-form'>
            {_template_form_fields(r, requirements)}
            <label><input type='checkbox' name='active' value='1' {'checked' if r.get('active') else ''} /> Active</label>
            <button type='submit'>Save</button>
          </form>
        </details>
        <form method='post' action='/task-templates/{h(r['id'])}/delete' class='inline'>
          <button type='submit' class='btn danger'>Delete</button>
        </form>
        """

    engine = TableEngine.from_query(columns, rows, lambda r: r["id"], req.query)
    table = render_table(
        engine,
        "/task-templates",
        req.query,
        action_column=ActionColumn(actions),
        empty_message="No task templates found. Adjust filters or add a template.",
        search_placeholder="Search task templates...",
    )
    return f"""
    <section class='card'>
      <details>
        <summary>Add task template</summary>
        <form method='post' action='/task-templates/new' class='stack-form'>
          {_template_form_fields({}, requirements)}
          <button type='submit'>Create template</button>
        </form>
      </details>
    </section>
    {table}
    """


# Tasks -------------------------------------------------------------------


def render_tasks_page(conn, req: Request) -> str:
    site_id = req.query.get("site_id", "")
    status = req.query.get("status", "")
    assigned_to = req.query.get("assigned_to", "")
    sites = store.get_sites(conn)
    users = store.get_users(conn)
    user_names = {u["id"]: u["name"] for u in users}
    view_rows = store.get_tasks_from_view(
        conn,
        {
            "site_id": site_id or None,
            "task_status": status if status in TASK_STATUSES else None,
            "assigned_to_user_id": assigned_to or None,
        },
    )
    rows = store.unique_open_tasks(view_rows, [status] if status in TASK_STATUSES else OPEN_LIST_STATUSES)
    return_to = req.full_path

    def assignee_cell(r: Dict[str, Any]) -> str:
        current = r.get("assigned_to_user_id") or ""
        view_all = ""
        if current:
            view_all = link("/tasks?" + urlencode({"assigned_to": current}), "View all", "muted")
        return f"""
        <form method='post' action='/tasks/{h(r['task_id'])}/assign' class='inline assign-form'>
          <input type='hidden' name='return_to' value='{h(return_to)}' />
          <select name='user_id' aria-label='Assign {h(r.get("task_name"))}'>{user_options(users, current)}</select>
          <button type='submit' class='btn ghost'>Save</button>
        </form>
        {view_all}
        """

    columns: List[Column[Dict[str, Any]]] = [
        Column("asset_tag", "Asset Tag", lambda r: r.get("asset_tag"), filterable=True),
        Column("task_name", "Task", lambda r: r.get("task_name"), filterable=True),
        Column("citation", "Citation", lambda r: r.get("citation"), filterable=True),
        Column("requirement_summary", "Requirement", lambda r: r.get("requirement_summary"), filterable=True),
        Column("due_date", "Due", lambda r: r.get("due_date"), filterable=True),
        Column(
            "assigned_to",
            "Assigned To",
            lambda r: user_names.get(r.get("assigned_to_user_id")) if r.get("assigned_to_user_id") else None,
            filterable=True,
            cell=assignee_cell,
        ),
        Column("task_status", "Status", lambda r: r.get("task_status"), filterable=True),
    ]
    engine = TableEngine.from_query(columns, rows, lambda r: r["task_id"], req.query)
    table = render_table(
        engine,
        "/tasks",
        req.query,
        action_column=ActionColumn(
            lambda r: link(f"/sites/{r['site_id']}/equipment/{r['equipment_id']}", "View equipment")
        ),
        empty_message="No open tasks found. Adjust filters or add tasks.",
        search_placeholder="Search tasks...",
    )
    status_opts = select_options([{"value": s, "label": s.title()} for s in TASK_STATUSES], status, blank="Open statuses")
    return f"""
    <section class='page-head'>
      <form method='get' action='/tasks' class='inline page-filters'>
        <label>Site <select name='site_id'>{site_options(sites, site_id, "All sites")}</select></label>
        <label>Status <select name='status'>{status_opts}</select></label>
        <label>Assignee <select name='assigned_to'>{user_options(users, assigned_to, "Anyone")}</select></label>
        <button type='submit' class='btn ghost'>Apply</button>
      </form>
      {link("/tasks/new", "Add task", "btn")}
    </section>
    {table}
    """


def render_task_new_page(conn) -> str:
    equipment = store.get_all_equipment(conn)
    templates = store.get_task_templates_with_site(conn)
    users = store.get_users(conn)
    equipment_opts = select_options(
        equipment,
        None,
        "equipment_id",
        lambda e: f"{e.get('asset_tag') or ''} ({e.get('site_name') or PLACEHOLDER})",
        "Select equipment",
    )
    return f"""
    <section class='card'>
      <p>{link("/tasks", "Back to tasks")}</p>
      <form method='post' action='/tasks/new' class='stack-form'>
        <label>Equipment <select name='equipment_id' required>{equipment_opts}</select></label>
        <label>Task template <select name='task_template_id' required>{template_options(templates)}</select></label>
        <label>Due date <input type='date' name='due_date' required /></label>
        <label>Assign to <select name='assigned_to_user_id'>{user_options(users)}</select></label>
        <button type='submit'>Create task</button>
      </form>
    </section>
    """


# Users -------------------------------------------------------------------


def render_users_page(conn, req: Request) -> str:
    site_id = req.query.get("site_id", "")
    sites = store.get_sites(conn)
    site_names = {s["id"]: s["name"] for s in sites}
    rows = store.get_users(conn, site_id or None)
    role_labels = {opt["value"]: opt["label"] for opt in USER_ROLES}
    columns: List[Column[Dict[str, Any]]] = [
        Column("name", "Name", lambda r: r.get("name"), filterable=True),
        Column("email", "Email", lambda r: r.get("email"), filterable=True),
        Column("role", "Role", lambda r: role_labels.get(r.get("role"), r.get("role")), filterable=True),
        Column("site", "Site", lambda r: site_names.get(r.get("site_id")) if r.get("site_id") else None, filterable=True),
        Column("status", "Status", lambda r: "Active", sortable=False),
    ]
    engine = TableEngine.from_query(columns, rows, lambda r: r["id"], req.query)
    table = render_table(
        engine,
        "/users",
        req.query,
        action_column=ActionColumn(lambda r: link("/tasks?" + urlencode({"assigned_to": r["id"]}), "View tasks")),
        empty_message="No users found. Adjust filters or add users.",
        search_placeholder="Search users...",
    )
    return f"""
    <section class='page-head'>
      <form method='get' action='/users' class='inline page-filters'>
        <label>Site <select name='site_id'>{site_options(sites, site_id, "All sites")}</select></label>
        <button type='submit' class='btn ghost'>Apply</button>
      </form>
      {link("/users/new", "Add user", "btn")}
    </section>
    {table}
    """


def render_user_new_page(conn) -> str:
    sites = store.get_sites(conn)
    return f"""
    <section class='card'>
      <p>{link("/users", "Back to users")}</p>
      <form method='post' action='/users/new' class='stack-form'>
        <label>Name <input name='name' required /></label>
        <label>Email <input type='email' name='email' required /></label>
        <label>Role <select name='role' required>{select_options(USER_ROLES, None, blank="Select a role")}</select></label>
        <label>Site <select name='site_id'>{site_options(sites, None, "No site")}</select></label>
        <button type='submit'>Create user</button>
      </form>
    </section>
    """


# WSGI entrypoint ---------------------------------------------------------


def app(environ, start_response):
    """WSGI entrypoint.

    Route dispatch is explicit (`if req.path == ...` plus a few compiled
    patterns for id segments) so every handler is visible in one place.
    """
    req = Request(environ)

    if req.path.startswith("/static/"):
        rel = req.path.replace("/static/", "", 1)
        static_file = (STATIC_DIR / rel).resolve()
        if STATIC_DIR.resolve() not in static_file.parents or not static_file.is_file():
            return Response("Not found", status="404 Not Found").wsgi(start_response)
        mime = "text/plain; charset=utf-8"
        if rel.endswith(".css"):
            mime = "text/css; charset=utf-8"
        return Response(static_file.read_text(encoding="utf-8"), content_type=mime).wsgi(start_response)

    if req.path == "/healthz":
        return Response("ok", content_type="text/plain").wsgi(start_response)
    if req.path == "/readyz":
        try:
            ensure_bootstrap()
            probe = db_connect()
            try:
                probe.execute("SELECT 1").fetchone()
            finally:
                probe.close()
            return Response("ready", content_type="text/plain").wsgi(start_response)
        except Exception as exc:
            return Response(
                f"not-ready: {h(str(exc))}",
                status="503 Service Unavailable",
                content_type="text/plain",
            ).wsgi(start_response)

    try:
        ensure_bootstrap()
    except Exception as exc:
        body = f"<h1>503 Service Unavailable</h1><p>Database bootstrap failed: {h(str(exc))}</p>"
        return Response(body, status="503 Service Unavailable").wsgi(start_response)

    notice = req.query.get("msg", "")
    conn = None

    try:
        conn = db_connect()
        if req.path == "/" and req.method == "GET":
            return render_page("Sites", req, notice, lambda: render_sites_page(conn)).wsgi(start_response)

        if req.path == "/equipment" and req.method == "GET":
            return render_page("Equipment", req, notice, lambda: render_all_equipment_page(conn, req)).wsgi(
                start_response
            )

        # Site scoped pages
        match = SITE_ROUTE.match(req.path) or SITE_EQUIPMENT_ROUTE.match(req.path)
        match = match or SITE_EQUIPMENT_NEW_ROUTE.match(req.path) or EQUIPMENT_ROUTE.match(req.path)
        if match:
            site = store.get_site_by_id(conn, match.group(1))
            if site is None:
                return not_found("Site").wsgi(start_response)
            site_id = site["id"]

            if match.re is SITE_ROUTE:
                return render_page(site["name"], req, notice, lambda: render_site_dashboard(conn, site)).wsgi(
                    start_response
                )

            if match.re is SITE_EQUIPMENT_ROUTE:
                return render_page(
                    f"{site['name']} equipment", req, notice, lambda: render_site_equipment_page(conn, site, req)
                ).wsgi(start_response)

            if match.re is SITE_EQUIPMENT_NEW_ROUTE and req.method == "GET":
                return render_page("Add equipment", req, notice, lambda: render_equipment_new_page(conn, site)).wsgi(
                    start_response
                )

            if match.re is SITE_EQUIPMENT_NEW_ROUTE and req.method == "POST":
                form = req.form
                back = f"/sites/{site_id}/equipment/new"
                fields = equipment_fields_from_form(form)
                if not fields["asset_tag"]:
                    return redirect(with_msg(back, "Asset tag is required")).wsgi(start_response)
                template_id = form.get("task_template_id", "").strip()
                due_date = parse_date(form.get("due_date", ""))
                if template_id and not due_date:
                    return redirect(with_msg(back, "Due date is required when assigning a task")).wsgi(start_response)
                try:
                    templates = {t["id"]: t for t in store.get_task_templates_for_site(conn, site_id)}
                    if template_id and template_id not in templates:
                        return redirect(with_msg(back, "Task template not found for this site")).wsgi(start_response)
                    fields["equipment_site_id"] = site_id
                    equipment = store.create_equipment(conn, fields)
                    if template_id and due_date:
                        add_task_for_equipment(conn, equipment["id"], templates[template_id], due_date)
                except DataStoreError as exc:
                    return redirect(with_msg(back, f"Could not create equipment: {exc.message}")).wsgi(start_response)
                return redirect(
                    with_msg(f"/sites/{site_id}/equipment/{equipment['id']}", "Equipment created")
                ).wsgi(start_response)

            if match.re is not EQUIPMENT_ROUTE:
                return not_found().wsgi(start_response)
            equipment = store.get_equipment_by_id(conn, match.group(2))
            if equipment is None or equipment["equipment_site_id"] != site_id:
                return not_found("Equipment").wsgi(start_response)
            detail_path = f"/sites/{site_id}/equipment/{equipment['id']}"
            action = match.group(3)

            if action is None and req.method == "GET":
                return render_page(
                    equipment["asset_tag"], req, notice, lambda: render_equipment_detail(conn, site, equipment)
                ).wsgi(start_response)

            if action == "edit" and req.method == "POST":
                fields = equipment_fields_from_form(req.form)
                if not fields["asset_tag"]:
                    return redirect(with_msg(detail_path, "Asset tag is required")).wsgi(start_response)
                try:
                    store.update_equipment(conn, equipment["id"], fields)
                except DataStoreError as exc:
                    return redirect(with_msg(detail_path, f"Could not update equipment: {exc.message}")).wsgi(
                        start_response
                    )
                return redirect(with_msg(detail_path, "Equipment updated")).wsgi(start_response)

            if action == "tasks" and req.method == "POST":
                form = req.form
                template_id = form.get("task_template_id", "").strip()
                due_date = parse_date(form.get("due_date", ""))
                if not template_id or not due_date:
                    return redirect(
                        with_msg(detail_path, "Task template, equipment, and due date are required")
                    ).wsgi(start_response)
                try:
                    templates = {t["id"]: t for t in store.get_task_templates_for_site(conn, site_id)}
                    if template_id not in templates:
                        return redirect(with_msg(detail_path, "Task template not found for this site")).wsgi(
                            start_response
                        )
                    add_task_for_equipment(
                        conn, equipment["id"], templates[template_id], due_date, form.get("assigned_to_user_id", "")
                    )
                except DataStoreError as exc:
                    return redirect(with_msg(detail_path, f"Could not create task: {exc.message}")).wsgi(
                        start_response
                    )
                return redirect(with_msg(detail_path, "Task created")).wsgi(start_response)

            return not_found().wsgi(start_response)

        if req.path == "/requirements" and req.method == "GET":
            return render_page("Requirements", req, notice, lambda: render_requirements_page(conn, req)).wsgi(
                start_response
            )

        if req.path == "/requirements/new" and req.method == "POST":
            form = req.form
            error = validate_requirement_form(form)
            if error:
                return redirect(with_msg("/requirements", error)).wsgi(start_response)
            try:
                store.create_requirement(conn, form)
            except DataStoreError as exc:
                return redirect(with_msg("/requirements", f"Could not create requirement: {exc.message}")).wsgi(
                    start_response
                )
            return redirect(with_msg("/requirements", "Requirement created")).wsgi(start_response)

        match = REQUIREMENT_ACTION_ROUTE.match(req.path)
        if match and req.method == "POST":
            requirement_id, action = match.group(1), match.group(2)
            if store.get_requirement_by_id(conn, requirement_id) is None:
                return not_found("Requirement").wsgi(start_response)
            try:
                if action == "delete":
                    store.delete_requirement(conn, requirement_id)
                    return redirect(with_msg("/requirements", "Requirement deleted")).wsgi(start_response)
                error = validate_requirement_form(req.form)
                if error:
                    return redirect(with_msg("/requirements", error)).wsgi(start_response)
                store.update_requirement(
                    conn, requirement_id, {k: req.form[k] for k in store.REQUIREMENT_UPDATE_FIELDS if k in req.form}
                )
            except DataStoreError as exc:
                return redirect(with_msg("/requirements", f"Could not {action} requirement: {exc.message}")).wsgi(
                    start_response
                )
            return redirect(with_msg("/requirements", "Requirement updated")).wsgi(start_response)

        if req.path == "/task-templates" and req.method == "GET":
            return render_page("Task Templates", req, notice, lambda: render_task_templates_page(conn, req)).wsgi(
                start_response
            )

        if req.path == "/task-templates/new" and req.method == "POST":
            form = req.form
            error = validate_template_form(form)
            if error:
                return redirect(with_msg("/task-templates", error)).wsgi(start_response)
            try:
                store.create_task_template(conn, form)
            except DataStoreError as exc:
                return redirect(with_msg("/task-templates", f"Could not create task template: {exc.message}")).wsgi(
                    start_response
                )
            return redirect(with_msg("/task-templates", "Task template created")).wsgi(start_response)

        match = TEMPLATE_ACTION_ROUTE.match(req.path)
        if match and req.method == "POST":
            template_id, action = match.group(1), match.group(2)
            if store.get_task_template_by_id(conn, template_id) is None:
                return not_found("Task template").wsgi(start_response)
            try:
                if action == "delete":
                    store.delete_task_template(conn, template_id)
                    return redirect(with_msg("/task-templates", "Task template deleted")).wsgi(start_response)
                error = validate_template_form(req.form)
                if error:
                    return redirect(with_msg("/task-templates", error)).wsgi(start_response)
                fields: Dict[str, Any] = {
                    k: req.form[k] for k in ("requirement_id", "task_name", "task_description", "frequency") if k in req.form
                }
                fields["active"] = req.form.get("active") == "1"
                store.update_task_template(conn, template_id, fields)
            except DataStoreError as exc:
                return redirect(
                    with_msg("/task-templates", f"Could not {action} task template: {exc.message}")
                ).wsgi(start_response)
            return redirect(with_msg("/task-templates", "Task template updated")).wsgi(start_response)

        if req.path == "/tasks" and req.method == "GET":
            return render_page("Tasks", req, notice, lambda: render_tasks_page(conn, req)).wsgi(start_response)

        if req.path == "/tasks/new" and req.method == "GET":
            return render_page("Add task", req, notice, lambda: render_task_new_page(conn)).wsgi(start_response)

        if req.path == "/tasks/new" and req.method == "POST":
            form = req.form
            template_id = form.get("task_template_id", "").strip()
            equipment_id = form.get("equipment_id", "").strip()
            due_date = parse_date(form.get("due_date", ""))
            if not template_id or not equipment_id or not due_date:
                return redirect(
                    with_msg("/tasks/new", "Task template, equipment, and due date are required")
                ).wsgi(start_response)
            try:
                template = store.get_task_template_by_id(conn, template_id)
                if template is None or store.get_equipment_by_id(conn, equipment_id) is None:
                    return redirect(with_msg("/tasks/new", "Task template or equipment not found")).wsgi(
                        start_response
                    )
                add_task_for_equipment(conn, equipment_id, template, due_date, form.get("assigned_to_user_id", ""))
            except DataStoreError as exc:
                return redirect(with_msg("/tasks/new", f"Could not create task: {exc.message}")).wsgi(start_response)
            return redirect(with_msg("/tasks", "Task created")).wsgi(start_response)

        match = TASK_ASSIGN_ROUTE.match(req.path)
        if match and req.method == "POST":
            task_id = match.group(1)
            back = safe_return_path(req.form.get("return_to", ""), "/tasks")
            if store.get_task_by_id(conn, task_id) is None:
                return not_found("Task").wsgi(start_response)
            user_id = req.form.get("user_id", "").strip() or None
            try:
                store.update_task_assignment(conn, task_id, user_id)
            except DataStoreError as exc:
                return redirect(with_msg(back, f"Could not update assignment: {exc.message}")).wsgi(start_response)
            return redirect(with_msg(back, "Task assignment updated")).wsgi(start_response)

        if req.path == "/users" and req.method == "GET":
            return render_page("Users", req, notice, lambda: render_users_page(conn, req)).wsgi(start_response)

        if req.path == "/users/new" and req.method == "GET":
            return render_page("Add user", req, notice, lambda: render_user_new_page(conn)).wsgi(start_response)

        if req.path == "/users/new" and req.method == "POST":
            form = req.form
            name = form.get("name", "").strip()
            email = form.get("email", "").strip().lower()
            role = form.get("role", "").strip()
            if not name or not email or role not in {opt["value"] for opt in USER_ROLES}:
                return redirect(with_msg("/users/new", "Name, email, and role are required")).wsgi(start_response)
            try:
                if store.get_user_by_email(conn, email):
                    return redirect(with_msg("/users/new", "Email already exists")).wsgi(start_response)
                store.create_user(conn, name, email, role, form.get("site_id", "").strip() or None)
            except DataStoreError as exc:
                return redirect(with_msg("/users/new", f"Could not create user: {exc.message}")).wsgi(start_response)
            return redirect(with_msg("/users", "User created")).wsgi(start_response)

        return not_found().wsgi(start_response)
    except DataStoreError as exc:
        page = render_layout("Error", render_error_panel(exc), req, notice)
        return Response(page, status="500 Internal Server Error").wsgi(start_response)
    except Exception:
        traceback.print_exc()
        return Response(
            "<h1>500 Internal Server Error</h1><p>An unexpected server error occurred.</p>",
            status="500 Internal Server Error",
        ).wsgi(start_response)
    finally:
        if conn is not None:
            conn.close()


def run() -> None:
    ensure_bootstrap()
    server_mode = "threaded" if config.WSGI_THREADED else "single-threaded"
    location = config.DB_PATH if config.DB_BACKEND == "sqlite" else "postgres"
    print(
        f"{APP_NAME} running on http://{config.HOST}:{config.PORT} "
        f"(db={location}, mode={server_mode}, journal={config.DB_JOURNAL_MODE}, sync={config.DB_SYNCHRONOUS})"
    )
    if config.WSGI_THREADED:
        server = make_server(config.HOST, config.PORT, app, server_class=ThreadedWSGIServer)
    else:
        server = make_server(config.HOST, config.PORT, app)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("Shutting down")


if __name__ == "__main__":
    run()
