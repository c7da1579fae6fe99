"""Database connection, schema bootstrap and data-access error handling.

SQLite is the default backend so the registry runs anywhere; setting
COMPLIANCE_DATABASE_URL to a postgres URL switches to PostgreSQL through a
thin compatibility layer that keeps sqlite-style `?` placeholders and
`row["column"]` access working unchanged.
"""

from __future__ import annotations

import json
import re
import sqlite3
import sys
import threading
import traceback
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from . import config

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency path
    psycopg = None
    dict_row = None

DB_ERRORS: Tuple[type, ...] = (sqlite3.Error,) + ((psycopg.Error,) if psycopg is not None else ())

BOOTSTRAPPED = False
BOOTSTRAP_LOCK = threading.Lock()
BOOTSTRAP_ERROR = ""


class DataStoreError(Exception):
    """A Data Store operation failed; `str(exc)` is safe to show to the user."""

    def __init__(self, operation: str, message: str):
        super().__init__(message)
        self.operation = operation
        self.message = message


def log_failure(operation: str, exc: BaseException, **details: object) -> None:
    payload = {"message": str(exc), "type": type(exc).__name__}
    payload.update({k: v for k, v in details.items() if v not in (None, "")})
    print(f"[{operation}] {json.dumps(payload, default=str)}", file=sys.stderr)


@contextmanager
def data_access(conn: Any, operation: str, **details: object) -> Iterator[None]:
    """Translate driver errors raised inside the block into DataStoreError.

    The connection is rolled back so a PostgreSQL transaction is usable
    again for follow-up reads on the same request.
    """
    try:
        yield
    except DB_ERRORS as exc:
        log_failure(operation, exc, **details)
        conn.rollback()
        raise DataStoreError(operation, str(exc)) from exc


class CompatRow(dict):
    """Row mapping that also supports numeric index access like sqlite3.Row."""

    def __init__(self, data: Dict[str, Any], order: List[str]):
        super().__init__(data)
        self._order = order

    def __getitem__(self, key: object) -> Any:  # type: ignore[override]
        if isinstance(key, int):
            name = self._order[key]
            return super().__getitem__(name)
        return super().__getitem__(str(key))


class CompatCursor:
    """Cursor wrapper with sqlite-like row behavior for PostgreSQL."""

    def __init__(self, cursor: Any, order: Optional[List[str]] = None):
        self._cursor = cursor
        self._order = order or []

    @property
    def rowcount(self) -> int:
        return int(getattr(self._cursor, "rowcount", -1))

    def _wrap(self, row: Any) -> Any:
        if isinstance(row, dict):
            return CompatRow(row, self._order)
        if isinstance(row, tuple):
            mapped = {self._order[idx]: row[idx] for idx in range(min(len(self._order), len(row)))}
            return CompatRow(mapped, self._order)
        return row

    def fetchone(self):
        row = self._cursor.fetchone()
        if row is None:
            return None
        return self._wrap(row)

    def fetchall(self):
        return [self._wrap(row) for row in self._cursor.fetchall()]


def _outside_quotes(sql: str) -> Iterator[Tuple[str, bool]]:
    """Yield each character of `sql` with whether it sits outside a quoted literal."""
    quote_char = ""
    for ch in sql:
        if ch in ("'", '"') and quote_char in ("", ch):
            quote_char = "" if quote_char else ch
            yield ch, False
            continue
        yield ch, not quote_char


def _split_sql_script(script: str) -> List[str]:
    """Break the DDL script on top-level semicolons for drivers without executescript."""
    statements: List[str] = []
    current: List[str] = []
    for ch, bare in _outside_quotes(script):
        if ch == ";" and bare:
            statements.append("".join(current))
            current = []
        else:
            current.append(ch)
    statements.append("".join(current))
    return [stmt.strip() for stmt in statements if stmt.strip()]


def _replace_qmark_params(sql: str) -> str:
    """Rewrite sqlite `?` placeholders as psycopg `%s`, leaving literals alone."""
    return "".join("%s" if ch == "?" and bare else ch for ch, bare in _outside_quotes(sql))


def _adapt_sql_for_postgres(sql: str) -> str:
    text = sql.strip()
    # PostgreSQL has no IF NOT EXISTS for views; replacing is equivalent for a read view.
    text = re.sub(r"^CREATE\s+VIEW\s+IF\s+NOT\s+EXISTS", "CREATE OR REPLACE VIEW", text, flags=re.IGNORECASE)
    if re.match(r"^INSERT\s+OR\s+IGNORE\s+INTO", text, flags=re.IGNORECASE):
        text = re.sub(r"^INSERT\s+OR\s+IGNORE\s+INTO", "INSERT INTO", text, flags=re.IGNORECASE)
        text = f"{text} ON CONFLICT DO NOTHING"
    return _replace_qmark_params(text)


class PostgresCompatConnection:
    """Small DB-API compatibility layer so sqlite-style calls work on PostgreSQL."""

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Tuple[Any, ...] = ()):
        cur = self._conn.cursor()
        try:
            cur.execute(_adapt_sql_for_postgres(sql), params)
        except Exception as exc:
            # Constraint violations surface the same way on both backends.
            if str(getattr(exc, "sqlstate", "") or "").startswith("23"):
                raise sqlite3.IntegrityError(str(exc)) from exc
            raise
        order = [d.name for d in (cur.description or [])]
        return CompatCursor(cur, order=order)

    def executescript(self, script: str):
        for stmt in _split_sql_script(script):
            self.execute(stmt)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def db_connect():
    if config.DB_BACKEND == "postgres":
        if psycopg is None:
            raise RuntimeError("PostgreSQL backend requested but psycopg is not installed.")
        raw = psycopg.connect(config.DATABASE_URL, row_factory=dict_row, autocommit=False)
        return PostgresCompatConnection(raw)

    db_path = config.DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=config.DB_BUSY_TIMEOUT_MS / 1000.0)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {config.DB_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys = ON")

    safe_journal_mode = (
        config.DB_JOURNAL_MODE
        if config.DB_JOURNAL_MODE in {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
        else "WAL"
    )
    safe_synchronous = config.DB_SYNCHRONOUS if config.DB_SYNCHRONOUS in {"OFF", "NORMAL", "FULL", "EXTRA"} else "NORMAL"
    conn.execute(f"PRAGMA journal_mode = {safe_journal_mode}")
    conn.execute(f"PRAGMA synchronous = {safe_synchronous}")
    return conn


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sites (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    client_name TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    role TEXT NOT NULL,
    site_id TEXT REFERENCES sites(id) ON DELETE SET NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS equipment (
    id TEXT PRIMARY KEY,
    asset_tag TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    equipment_site_id TEXT NOT NULL REFERENCES sites(id),
    sap_equipment_number TEXT,
    sort_field TEXT,
    functional_loc TEXT,
    location_description TEXT,
    equipment_type TEXT,
    equipment_subtype TEXT,
    process_unit TEXT,
    area_location TEXT,
    regulation_name TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS requirements (
    id TEXT PRIMARY KEY,
    citation TEXT NOT NULL,
    regulation_name TEXT,
    requirement_summary TEXT NOT NULL,
    requirement_text TEXT,
    site_id TEXT NOT NULL REFERENCES sites(id),
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS equipment_requirements (
    id TEXT PRIMARY KEY,
    equipment_id TEXT NOT NULL REFERENCES equipment(id) ON DELETE CASCADE,
    requirement_id TEXT NOT NULL REFERENCES requirements(id) ON DELETE CASCADE,
    applicability TEXT NOT NULL DEFAULT 'applicable',
    pollutant TEXT,
    notes TEXT,
    mapped_by_user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
    mapped_at TEXT,
    UNIQUE (equipment_id, requirement_id)
);

CREATE TABLE IF NOT EXISTS task_templates (
    id TEXT PRIMARY KEY,
    requirement_id TEXT NOT NULL REFERENCES requirements(id) ON DELETE CASCADE,
    task_name TEXT NOT NULL,
    task_description TEXT NOT NULL DEFAULT '',
    frequency TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    task_template_id TEXT NOT NULL REFERENCES task_templates(id),
    equipment_id TEXT NOT NULL REFERENCES equipment(id),
    due_date TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    assigned_to_user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
    submitted_at TEXT,
    approved_by_user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
    rejection_reason TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_equipment_site ON equipment (equipment_site_id, is_active);
CREATE INDEX IF NOT EXISTS idx_requirements_site ON requirements (site_id);
CREATE INDEX IF NOT EXISTS idx_task_templates_requirement ON task_templates (requirement_id);
CREATE INDEX IF NOT EXISTS idx_tasks_equipment ON tasks (equipment_id, task_template_id);
CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON tasks (assigned_to_user_id, status);

CREATE VIEW IF NOT EXISTS site_equipment_requirements_tasks_v AS
SELECT
    s.id AS site_id,
    s.name AS site_name,
    s.client_name AS client_name,
    e.id AS equipment_id,
    e.asset_tag AS asset_tag,
    e.description AS equipment_description,
    e.equipment_site_id AS equipment_site_id,
    r.id AS requirement_id,
    r.citation AS citation,
    r.requirement_summary AS requirement_summary,
    t.id AS task_id,
    t.task_template_id AS task_template_id,
    tt.task_name AS task_name,
    t.status AS task_status,
    t.due_date AS due_date,
    t.assigned_to_user_id AS assigned_to_user_id
FROM equipment e
JOIN sites s ON s.id = e.equipment_site_id
JOIN equipment_requirements er ON er.equipment_id = e.id
JOIN requirements r ON r.id = er.requirement_id
LEFT JOIN task_templates tt ON tt.requirement_id = r.id
LEFT JOIN tasks t ON t.equipment_id = e.id AND t.task_template_id = tt.id
WHERE e.is_active = 1;
"""


def init_db() -> None:
    """Create the schema and the read view.

    Safe to call repeatedly: every statement is guarded by IF NOT EXISTS.
    """
    conn = db_connect()
    try:
        conn.executescript(SCHEMA_SQL)
        conn.commit()
    finally:
        conn.close()


def ensure_bootstrap() -> None:
    """Initialize the database once per process.

    WSGI servers may run requests concurrently, so the first request takes a
    lock while the schema is created.
    """
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    if BOOTSTRAPPED:
        return
    with BOOTSTRAP_LOCK:
        if BOOTSTRAPPED:
            return
        try:
            init_db()
            BOOTSTRAPPED = True
            BOOTSTRAP_ERROR = ""
        except Exception as exc:
            BOOTSTRAP_ERROR = str(exc)
            traceback.print_exc()
            raise


def reset_bootstrap() -> None:
    """Forget bootstrap state so the next request re-runs init_db (used after DB_PATH changes)."""
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    with BOOTSTRAP_LOCK:
        BOOTSTRAPPED = False
        BOOTSTRAP_ERROR = ""
