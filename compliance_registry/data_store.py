"""Data Store: every read and write the pages perform.

Functions take an open connection first (see `db.db_connect`) and return
plain dicts so callers never depend on the backend's row type. Driver
errors surface as `db.DataStoreError`; mutations commit before returning.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import CLOSED_TASK_STATUSES, OPEN_LIST_STATUSES
from .db import DataStoreError, data_access

EQUIPMENT_OPTIONAL_FIELDS = [
    "sap_equipment_number",
    "sort_field",
    "functional_loc",
    "location_description",
    "equipment_type",
    "equipment_subtype",
    "process_unit",
    "area_location",
    "regulation_name",
]
EQUIPMENT_UPDATE_FIELDS = ["asset_tag", "description", *EQUIPMENT_OPTIONAL_FIELDS, "is_active"]
REQUIREMENT_UPDATE_FIELDS = [
    "citation",
    "regulation_name",
    "requirement_summary",
    "requirement_text",
    "site_id",
    "is_active",
]
TASK_TEMPLATE_UPDATE_FIELDS = ["requirement_id", "task_name", "task_description", "frequency", "active"]

VIEW_NAME = "site_equipment_requirements_tasks_v"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso(ts: Optional[dt.datetime] = None) -> str:
    value = ts or utcnow()
    return value.replace(microsecond=0).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _dicts(rows: Iterable[Any]) -> List[Dict[str, Any]]:
    return [dict(row) for row in rows]


def _dict(row: Any) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


def _placeholders(values: Sequence[object]) -> str:
    return ",".join("?" for _ in values)


def _clean(value: object) -> Optional[str]:
    """Trim text input; blank becomes None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def is_open_status(status: Optional[str]) -> bool:
    return bool(status) and status not in CLOSED_TASK_STATUSES


# Sites -------------------------------------------------------------------


def get_sites(conn) -> List[Dict[str, Any]]:
    with data_access(conn, "get_sites"):
        rows = conn.execute(
            "SELECT id, name, client_name, is_active FROM sites WHERE is_active = 1 ORDER BY name"
        ).fetchall()
    return _dicts(rows)


def get_site_by_id(conn, site_id: str) -> Optional[Dict[str, Any]]:
    with data_access(conn, "get_site_by_id", site_id=site_id):
        row = conn.execute(
            "SELECT id, name, client_name, is_active FROM sites WHERE id = ?", (site_id,)
        ).fetchone()
    return _dict(row)


def create_site(conn, name: str, client_name: str = "", is_active: bool = True) -> Dict[str, Any]:
    site_id = new_id()
    with data_access(conn, "create_site", name=name):
        conn.execute(
            "INSERT INTO sites (id, name, client_name, is_active, created_at) VALUES (?, ?, ?, ?, ?)",
            (site_id, name.strip(), (client_name or "").strip(), 1 if is_active else 0, iso()),
        )
        conn.commit()
    return get_site_by_id(conn, site_id) or {}


# Read view ---------------------------------------------------------------


def get_view_data(
    conn,
    site_id: Optional[str] = None,
    equipment_id: Optional[str] = None,
    task_status: Optional[str] = None,
    assigned_to_user_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    where: List[str] = []
    params: List[object] = []
    for column, value in (
        ("site_id", site_id),
        ("equipment_id", equipment_id),
        ("task_status", task_status),
        ("assigned_to_user_id", assigned_to_user_id),
    ):
        if value:
            where.append(f"{column} = ?")
            params.append(value)
    sql = f"SELECT * FROM {VIEW_NAME}"
    if where:
        sql += " WHERE " + " AND ".join(where)
    sql += " ORDER BY asset_tag, citation, due_date"
    with data_access(
        conn,
        "get_view_data",
        site_id=site_id,
        equipment_id=equipment_id,
        task_status=task_status,
        assigned_to_user_id=assigned_to_user_id,
    ):
        rows = conn.execute(sql, tuple(params)).fetchall()
    return _dicts(rows)


def group_equipment_rows(rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Collapse view rows to one entry per equipment.

    Each entry carries its distinct citations (first-seen order) and the
    number of open tasks. Result is ordered by asset tag.
    """
    grouped: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        equipment_id = row.get("equipment_id")
        if not equipment_id:
            continue
        entry = grouped.get(equipment_id)
        if entry is None:
            entry = {
                "equipment_id": equipment_id,
                "asset_tag": row.get("asset_tag") or "",
                "equipment_description": row.get("equipment_description") or "",
                "site_id": row.get("site_id"),
                "site_name": row.get("site_name"),
                "requirements": [],
                "open_task_count": 0,
            }
            grouped[equipment_id] = entry
        citation = row.get("citation")
        if citation and citation not in entry["requirements"]:
            entry["requirements"].append(citation)
        if row.get("task_id") and is_open_status(row.get("task_status")):
            entry["open_task_count"] += 1
    return sorted(grouped.values(), key=lambda e: e["asset_tag"].casefold())


def group_requirements_with_tasks(rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Equipment detail shape: requirements in first-seen order, each with its tasks."""
    grouped: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        requirement_id = row.get("requirement_id")
        if not requirement_id:
            continue
        entry = grouped.setdefault(
            requirement_id,
            {
                "requirement_id": requirement_id,
                "citation": row.get("citation") or "",
                "requirement_summary": row.get("requirement_summary") or "",
                "tasks": [],
            },
        )
        if row.get("task_id"):
            entry["tasks"].append(
                {
                    "task_id": row["task_id"],
                    "task_name": row.get("task_name") or "",
                    "task_status": row.get("task_status") or "",
                    "due_date": row.get("due_date"),
                    "assigned_to_user_id": row.get("assigned_to_user_id"),
                }
            )
    return list(grouped.values())


def unique_open_tasks(
    rows: Iterable[Mapping[str, Any]], statuses: Sequence[str] = OPEN_LIST_STATUSES
) -> List[Dict[str, Any]]:
    """One row per task whose status is listed, first occurrence wins."""
    seen = set()
    out: List[Dict[str, Any]] = []
    for row in rows:
        task_id = row.get("task_id")
        if not task_id or task_id in seen or row.get("task_status") not in statuses:
            continue
        seen.add(task_id)
        out.append(dict(row))
    return out


def count_open_tasks(rows: Iterable[Mapping[str, Any]]) -> int:
    return len({row["task_id"] for row in rows if row.get("task_id") and is_open_status(row.get("task_status"))})


# Equipment ---------------------------------------------------------------


def _requirements_by_equipment(conn, equipment_ids: Sequence[str]) -> Dict[str, List[str]]:
    if not equipment_ids:
        return {}
    with data_access(conn, "get_equipment_requirements"):
        rows = conn.execute(
            f"""
            SELECT er.equipment_id, r.citation
            FROM equipment_requirements er
            JOIN requirements r ON r.id = er.requirement_id
            WHERE er.equipment_id IN ({_placeholders(equipment_ids)})
            ORDER BY r.citation
            """,
            tuple(equipment_ids),
        ).fetchall()
    out: Dict[str, List[str]] = {}
    for row in rows:
        citations = out.setdefault(row["equipment_id"], [])
        if row["citation"] and row["citation"] not in citations:
            citations.append(row["citation"])
    return out


def _equipment_from_table(conn, site_id: str) -> List[Dict[str, Any]]:
    with data_access(conn, "get_equipment_for_site_fallback", site_id=site_id):
        rows = conn.execute(
            """
            SELECT id, asset_tag, description, equipment_type, process_unit, regulation_name
            FROM equipment
            WHERE equipment_site_id = ? AND is_active = 1
            ORDER BY asset_tag
            """,
            (site_id,),
        ).fetchall()
    items = [
        {
            "equipment_id": row["id"],
            "asset_tag": row["asset_tag"],
            "equipment_description": row["description"],
            "equipment_type": row["equipment_type"],
            "process_unit": row["process_unit"],
            "regulation_name": row["regulation_name"],
            "site_id": site_id,
            "requirements": [],
            "open_task_count": 0,
        }
        for row in rows
    ]
    citations = _requirements_by_equipment(conn, [item["equipment_id"] for item in items])
    for item in items:
        item["requirements"] = citations.get(item["equipment_id"], [])
    return items


def get_equipment_for_site(conn, site_id: str) -> List[Dict[str, Any]]:
    """Site equipment with citations and open-task counts.

    Equipment without any mapped requirement is absent from the view, so an
    empty (or failing) view read falls back to the equipment table.
    """
    try:
        rows = get_view_data(conn, site_id=site_id)
    except DataStoreError:
        return _equipment_from_table(conn, site_id)
    grouped = group_equipment_rows(rows)
    if not grouped:
        return _equipment_from_table(conn, site_id)

    ids = [item["equipment_id"] for item in grouped]
    with data_access(conn, "get_equipment_for_site", site_id=site_id):
        extra_rows = conn.execute(
            f"SELECT id, equipment_type, process_unit, regulation_name FROM equipment WHERE id IN ({_placeholders(ids)})",
            tuple(ids),
        ).fetchall()
    extras = {row["id"]: row for row in extra_rows}
    for item in grouped:
        extra = extras.get(item["equipment_id"])
        item["equipment_type"] = extra["equipment_type"] if extra else None
        item["process_unit"] = extra["process_unit"] if extra else None
        item["regulation_name"] = extra["regulation_name"] if extra else None
    return grouped


def get_all_equipment(conn, site_id: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = """
        SELECT e.id AS equipment_id, e.asset_tag, e.description AS equipment_description,
               e.equipment_site_id, s.name AS site_name, e.equipment_type, e.process_unit,
               e.regulation_name
        FROM equipment e
        LEFT JOIN sites s ON s.id = e.equipment_site_id
        WHERE e.is_active = 1
    """
    params: tuple = ()
    if site_id:
        sql += " AND e.equipment_site_id = ?"
        params = (site_id,)
    sql += " ORDER BY e.asset_tag"
    with data_access(conn, "get_all_equipment", site_id=site_id):
        items = _dicts(conn.execute(sql, params).fetchall())
    citations = _requirements_by_equipment(conn, [item["equipment_id"] for item in items])
    for item in items:
        item["requirements"] = citations.get(item["equipment_id"], [])
    return items


def get_equipment_detail(conn, equipment_id: str) -> List[Dict[str, Any]]:
    """View rows for one equipment item; a read failure yields an empty list."""
    try:
        return get_view_data(conn, equipment_id=equipment_id)
    except DataStoreError:
        return []


def get_equipment_by_id(conn, equipment_id: str) -> Optional[Dict[str, Any]]:
    with data_access(conn, "get_equipment_by_id", equipment_id=equipment_id):
        row = conn.execute("SELECT * FROM equipment WHERE id = ?", (equipment_id,)).fetchone()
    return _dict(row)


def create_equipment(conn, fields: Mapping[str, Any]) -> Dict[str, Any]:
    equipment_id = new_id()
    columns = ["id", "asset_tag", "description", "equipment_site_id", "is_active", "created_at"]
    values: List[object] = [
        equipment_id,
        str(fields.get("asset_tag") or "").strip(),
        str(fields.get("description") or "").strip(),
        fields.get("equipment_site_id"),
        0 if fields.get("is_active") is False else 1,
        iso(),
    ]
    for name in EQUIPMENT_OPTIONAL_FIELDS:
        value = _clean(fields.get(name))
        if value is not None:
            columns.append(name)
            values.append(value)
    with data_access(conn, "create_equipment", asset_tag=fields.get("asset_tag")):
        conn.execute(
            f"INSERT INTO equipment ({', '.join(columns)}) VALUES ({_placeholders(values)})",
            tuple(values),
        )
        conn.commit()
    return get_equipment_by_id(conn, equipment_id) or {}


def update_equipment(conn, equipment_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, object] = {}
    for name in EQUIPMENT_UPDATE_FIELDS:
        if name not in fields:
            continue
        value = fields[name]
        if name == "is_active":
            payload[name] = 1 if value else 0
        elif name == "description":
            payload[name] = str(value or "").strip()
        else:
            payload[name] = _clean(value)
    if payload:
        assignments = ", ".join(f"{name} = ?" for name in payload)
        with data_access(conn, "update_equipment", equipment_id=equipment_id):
            conn.execute(
                f"UPDATE equipment SET {assignments} WHERE id = ?",
                tuple(payload.values()) + (equipment_id,),
            )
            conn.commit()
    row = get_equipment_by_id(conn, equipment_id)
    if row is None:
        raise DataStoreError("update_equipment", "Equipment not found")
    return row


# Requirements ------------------------------------------------------------


def get_unique_regulation_names(conn) -> List[str]:
    with data_access(conn, "get_unique_regulation_names"):
        rows = conn.execute(
            "SELECT regulation_name FROM requirements WHERE regulation_name IS NOT NULL"
        ).fetchall()
    names = {str(row["regulation_name"]).strip() for row in rows}
    return sorted(name for name in names if name)


def get_all_requirements(conn, site_id: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT id, citation, regulation_name, requirement_summary, site_id FROM requirements"
    params: tuple = ()
    if site_id:
        sql += " WHERE site_id = ?"
        params = (site_id,)
    sql += " ORDER BY citation"
    with data_access(conn, "get_all_requirements", site_id=site_id):
        return _dicts(conn.execute(sql, params).fetchall())


def get_requirement_by_id(conn, requirement_id: str) -> Optional[Dict[str, Any]]:
    with data_access(conn, "get_requirement_by_id", requirement_id=requirement_id):
        row = conn.execute("SELECT * FROM requirements WHERE id = ?", (requirement_id,)).fetchone()
    return _dict(row)


def get_requirements_with_sites(conn) -> List[Dict[str, Any]]:
    with data_access(conn, "get_requirements_with_sites"):
        rows = conn.execute(
            """
            SELECT r.id, r.citation, r.regulation_name, r.requirement_summary, r.requirement_text,
                   r.site_id, r.is_active, COALESCE(s.name, '—') AS site_name
            FROM requirements r
            LEFT JOIN sites s ON s.id = r.site_id
            ORDER BY r.citation
            """
        ).fetchall()
    return _dicts(rows)


def create_requirement(conn, fields: Mapping[str, Any]) -> Dict[str, Any]:
    requirement_id = new_id()
    with data_access(conn, "create_requirement", citation=fields.get("citation")):
        conn.execute(
            """
            INSERT INTO requirements
                (id, citation, regulation_name, requirement_summary, requirement_text, site_id, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                requirement_id,
                str(fields.get("citation") or "").strip(),
                _clean(fields.get("regulation_name")),
                str(fields.get("requirement_summary") or "").strip(),
                _clean(fields.get("requirement_text")),
                fields.get("site_id"),
                0 if fields.get("is_active") is False else 1,
                iso(),
            ),
        )
        conn.commit()
    return get_requirement_by_id(conn, requirement_id) or {}


def update_requirement(conn, requirement_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, object] = {}
    for name in REQUIREMENT_UPDATE_FIELDS:
        if name not in fields:
            continue
        value = fields[name]
        if name == "is_active":
            payload[name] = 1 if value else 0
        elif name in ("citation", "requirement_summary"):
            payload[name] = str(value or "").strip()
        else:
            payload[name] = _clean(value)
    if payload:
        assignments = ", ".join(f"{name} = ?" for name in payload)
        with data_access(conn, "update_requirement", requirement_id=requirement_id):
            conn.execute(
                f"UPDATE requirements SET {assignments} WHERE id = ?",
                tuple(payload.values()) + (requirement_id,),
            )
            conn.commit()
    row = get_requirement_by_id(conn, requirement_id)
    if row is None:
        raise DataStoreError("update_requirement", "Requirement not found")
    return row


def delete_requirement(conn, requirement_id: str) -> None:
    with data_access(conn, "delete_requirement", requirement_id=requirement_id):
        conn.execute("DELETE FROM requirements WHERE id = ?", (requirement_id,))
        conn.commit()


def ensure_equipment_requirement(
    conn, equipment_id: str, requirement_id: str, mapped_by_user_id: Optional[str] = None
) -> None:
    """Map a requirement to equipment; an existing mapping is left as is."""
    with data_access(conn, "ensure_equipment_requirement", equipment_id=equipment_id, requirement_id=requirement_id):
        existing = conn.execute(
            "SELECT id FROM equipment_requirements WHERE equipment_id = ? AND requirement_id = ?",
            (equipment_id, requirement_id),
        ).fetchone()
        if existing:
            return
        conn.execute(
            """
            INSERT OR IGNORE INTO equipment_requirements
                (id, equipment_id, requirement_id, applicability, mapped_by_user_id, mapped_at)
            VALUES (?, ?, ?, 'applicable', ?, ?)
            """,
            (new_id(), equipment_id, requirement_id, mapped_by_user_id, iso()),
        )
        conn.commit()


# Task templates ----------------------------------------------------------


def get_task_templates_for_site(conn, site_id: str) -> List[Dict[str, Any]]:
    with data_access(conn, "get_task_templates_for_site", site_id=site_id):
        rows = conn.execute(
            """
            SELECT tt.id, tt.task_name, tt.requirement_id, r.citation
            FROM task_templates tt
            JOIN requirements r ON r.id = tt.requirement_id
            WHERE r.site_id = ? AND r.is_active = 1 AND tt.active = 1
            ORDER BY tt.task_name
            """,
            (site_id,),
        ).fetchall()
    return _dicts(rows)


def get_task_templates_with_site(conn) -> List[Dict[str, Any]]:
    with data_access(conn, "get_task_templates_with_site"):
        rows = conn.execute(
            """
            SELECT tt.id, tt.task_name, tt.requirement_id, r.site_id, r.citation, r.requirement_summary
            FROM task_templates tt
            JOIN requirements r ON r.id = tt.requirement_id
            WHERE tt.active = 1
            ORDER BY tt.task_name
            """
        ).fetchall()
    return _dicts(rows)


def get_all_task_templates(conn) -> List[Dict[str, Any]]:
    with data_access(conn, "get_all_task_templates"):
        rows = conn.execute(
            """
            SELECT tt.id, tt.requirement_id, tt.task_name, tt.task_description, tt.frequency, tt.active,
                   r.citation, r.requirement_summary
            FROM task_templates tt
            LEFT JOIN requirements r ON r.id = tt.requirement_id
            ORDER BY tt.requirement_id, tt.task_name
            """
        ).fetchall()
    return _dicts(rows)


def get_task_template_by_id(conn, template_id: str) -> Optional[Dict[str, Any]]:
    with data_access(conn, "get_task_template_by_id", template_id=template_id):
        row = conn.execute("SELECT * FROM task_templates WHERE id = ?", (template_id,)).fetchone()
    return _dict(row)


def create_task_template(conn, fields: Mapping[str, Any]) -> Dict[str, Any]:
    template_id = new_id()
    with data_access(conn, "create_task_template", task_name=fields.get("task_name")):
        conn.execute(
            """
            INSERT INTO task_templates (id, requirement_id, task_name, task_description, frequency, active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                template_id,
                fields.get("requirement_id"),
                str(fields.get("task_name") or "").strip(),
                str(fields.get("task_description") or "").strip(),
                fields.get("frequency"),
                0 if fields.get("active") is False else 1,
                iso(),
            ),
        )
        conn.commit()
    return get_task_template_by_id(conn, template_id) or {}


def update_task_template(conn, template_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
    payload: Dict[str, object] = {}
    for name in TASK_TEMPLATE_UPDATE_FIELDS:
        if name not in fields:
            continue
        value = fields[name]
        if name == "active":
            payload[name] = 1 if value else 0
        else:
            payload[name] = str(value or "").strip()
    if payload:
        assignments = ", ".join(f"{name} = ?" for name in payload)
        with data_access(conn, "update_task_template", template_id=template_id):
            conn.execute(
                f"UPDATE task_templates SET {assignments} WHERE id = ?",
                tuple(payload.values()) + (template_id,),
            )
            conn.commit()
    row = get_task_template_by_id(conn, template_id)
    if row is None:
        raise DataStoreError("update_task_template", "Task template not found")
    return row


def delete_task_template(conn, template_id: str) -> None:
    with data_access(conn, "delete_task_template", template_id=template_id):
        conn.execute("DELETE FROM task_templates WHERE id = ?", (template_id,))
        conn.commit()


# Tasks -------------------------------------------------------------------


def get_tasks_from_view(conn, filters: Optional[Mapping[str, Optional[str]]] = None) -> List[Dict[str, Any]]:
    filters = filters or {}
    return get_view_data(
        conn,
        site_id=filters.get("site_id"),
        equipment_id=filters.get("equipment_id"),
        task_status=filters.get("task_status"),
        assigned_to_user_id=filters.get("assigned_to_user_id"),
    )


def get_task_by_id(conn, task_id: str) -> Optional[Dict[str, Any]]:
    with data_access(conn, "get_task_by_id", task_id=task_id):
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _dict(row)


def create_task(
    conn,
    task_template_id: str,
    equipment_id: str,
    due_date: str,
    status: str = "open",
    assigned_to_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    task_id = new_id()
    with data_access(conn, "create_task", task_template_id=task_template_id, equipment_id=equipment_id):
        conn.execute(
            """
            INSERT INTO tasks (id, task_template_id, equipment_id, due_date, status, assigned_to_user_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (task_id, task_template_id, equipment_id, due_date, status, assigned_to_user_id, iso()),
        )
        conn.commit()
    return get_task_by_id(conn, task_id) or {}


def update_task_status(
    conn, task_id: str, status: str, extra: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """Set a task's status plus any of rejection_reason / assigned_to_user_id."""
    payload: Dict[str, object] = {"status": status}
    for name in ("rejection_reason", "assigned_to_user_id", "approved_by_user_id"):
        if extra and name in extra:
            payload[name] = extra[name]
    if status == "submitted":
        payload["submitted_at"] = iso()
    assignments = ", ".join(f"{name} = ?" for name in payload)
    with data_access(conn, "update_task_status", task_id=task_id, status=status):
        conn.execute(f"UPDATE tasks SET {assignments} WHERE id = ?", tuple(payload.values()) + (task_id,))
        conn.commit()
    row = get_task_by_id(conn, task_id)
    if row is None:
        raise DataStoreError("update_task_status", "Task not found")
    return row


def assign_task(conn, task_id: str, user_id: str) -> Dict[str, Any]:
    return update_task_status(conn, task_id, "assigned", {"assigned_to_user_id": user_id})


def update_task_assignment(conn, task_id: str, user_id: Optional[str]) -> Dict[str, Any]:
    """Assigning a user marks the task assigned; clearing it reopens the task."""
    if user_id:
        return assign_task(conn, task_id, user_id)
    return update_task_status(conn, task_id, "open", {"assigned_to_user_id": None})


# Users -------------------------------------------------------------------


def get_users(conn, site_id: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT id, name, email, role, site_id, is_active FROM users WHERE is_active = 1"
    params: tuple = ()
    if site_id:
        sql += " AND site_id = ?"
        params = (site_id,)
    sql += " ORDER BY name"
    with data_access(conn, "get_users", site_id=site_id):
        return _dicts(conn.execute(sql, params).fetchall())


def get_user_by_id(conn, user_id: str) -> Optional[Dict[str, Any]]:
    with data_access(conn, "get_user_by_id", user_id=user_id):
        row = conn.execute(
            "SELECT id, name, email, role, site_id, is_active FROM users WHERE id = ?", (user_id,)
        ).fetchone()
    return _dict(row)


def create_user(conn, name: str, email: str, role: str, site_id: Optional[str] = None) -> Dict[str, Any]:
    user_id = new_id()
    with data_access(conn, "create_user", email=email):
        conn.execute(
            "INSERT INTO users (id, name, email, role, site_id, is_active, created_at) VALUES (?, ?, ?, ?, ?, 1, ?)",
            (user_id, name.strip(), email.strip().lower(), role, site_id or None, iso()),
        )
        conn.commit()
    return get_user_by_id(conn, user_id) or {}


def get_user_by_email(conn, email: str) -> Optional[Dict[str, Any]]:
    with data_access(conn, "get_user_by_email"):
        row = conn.execute(
            "SELECT id, name, email, role, site_id, is_active FROM users WHERE email = ?", (email.strip().lower(),)
        ).fetchone()
    return _dict(row)
