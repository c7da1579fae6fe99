#!/usr/bin/env python3
"""Copy Compliance Registry data from SQLite into PostgreSQL.

Usage:
  COMPLIANCE_DATABASE_URL=postgresql://... python3 scripts/migrate_sqlite_to_postgres.py
  python3 scripts/migrate_sqlite_to_postgres.py --source /path/to/compliance_registry.db --truncate

The destination schema is created first (same DDL the app bootstraps with),
then tables are copied parent-first so foreign keys hold on every insert.
"""

from __future__ import annotations

import argparse
import sqlite3
import sys
from pathlib import Path
from typing import Dict, List

try:
    import psycopg
except Exception as exc:  # pragma: no cover
    raise SystemExit(f"psycopg is required: {exc}")

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from compliance_registry import config
from compliance_registry.db import init_db

# Parent tables before children.
TABLE_ORDER = ["sites", "users", "equipment", "requirements", "equipment_requirements", "task_templates", "tasks"]


def sqlite_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return [str(r[1]) for r in rows]


def pg_columns(conn, table: str) -> List[str]:
    conn.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = current_schema() AND table_name = %s
        ORDER BY ordinal_position
        """,
        (table,),
    )
    return [str(r[0]) for r in conn.fetchall()]


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--source", default=str(config.DATA_DIR / "compliance_registry.db"))
    parser.add_argument("--truncate", action="store_true", help="truncate destination tables before import")
    args = parser.parse_args()

    if config.DB_BACKEND != "postgres":
        raise SystemExit("Set COMPLIANCE_DATABASE_URL (or DATABASE_URL) to a postgres URL first.")

    source_path = Path(args.source)
    if not source_path.exists():
        raise SystemExit(f"SQLite source not found: {source_path}")

    init_db()
    src = sqlite3.connect(str(source_path))
    src.row_factory = sqlite3.Row
    dst = psycopg.connect(config.DATABASE_URL, autocommit=False)

    migrated: Dict[str, int] = {}
    try:
        with dst.cursor() as dcur:
            if args.truncate:
                dcur.execute("TRUNCATE TABLE " + ", ".join(f'"{t}"' for t in TABLE_ORDER) + " CASCADE")
            for table in TABLE_ORDER:
                src_cols = sqlite_columns(src, table)
                dst_cols = set(pg_columns(dcur, table))
                cols = [c for c in src_cols if c in dst_cols]
                if not cols:
                    continue

                qcols = ", ".join([f'"{c}"' for c in cols])
                ph = ", ".join(["%s"] * len(cols))
                insert_sql = f'INSERT INTO "{table}" ({qcols}) VALUES ({ph}) ON CONFLICT DO NOTHING'

                rows = src.execute(f'SELECT {qcols} FROM "{table}"').fetchall()
                if not rows:
                    migrated[table] = 0
                    continue

                batch = [tuple(row[c] for c in cols) for row in rows]
                dcur.executemany(insert_sql, batch)
                migrated[table] = len(batch)

        dst.commit()
    finally:
        src.close()
        dst.close()

    total = sum(migrated.values())
    print(f"MIGRATION_COMPLETE tables={len(migrated)} rows={total}")
    for table in TABLE_ORDER:
        if table in migrated:
            print(f"- {table}: {migrated[table]}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
