#!/usr/bin/env python3
"""Create the Compliance Registry schema and print a quick table summary."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from compliance_registry import config
from compliance_registry.db import db_connect, ensure_bootstrap

TABLES = ("sites", "users", "equipment", "requirements", "equipment_requirements", "task_templates", "tasks")


def main() -> int:
    ensure_bootstrap()
    conn = db_connect()
    try:
        probes = {}
        for table in TABLES:
            probes[table] = int(conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"])
    finally:
        conn.close()

    print("BOOTSTRAP_OK")
    print("backend:", config.DB_BACKEND)
    if config.DB_BACKEND == "postgres":
        print("database_url_set:", bool(config.DATABASE_URL))
    else:
        print("db_path:", config.DB_PATH)
    print("counts:", probes)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
