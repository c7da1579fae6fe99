#!/usr/bin/env python3
"""Load deterministic sample data so every page has something to sort and filter."""

import argparse
import datetime as dt
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from compliance_registry import data_store as store
from compliance_registry.config import FREQUENCY_OPTIONS, USER_ROLES
from compliance_registry.db import db_connect, ensure_bootstrap

RANDOM_SEED = 20260216
SAMPLE_MARKER = "[SAMPLE]"

SITES = [
    ("Bayside Refinery", "Coastal Energy"),
    ("North Ridge Terminal", "Coastal Energy"),
    ("Riverbend Chemical", "Riverbend Holdings"),
]

NAMES = [
    "Alex Rivera",
    "Priya Shah",
    "Jordan Lee",
    "Maya Thompson",
    "Samir Patel",
    "Elena Garcia",
    "Noah Kim",
    "Taylor Quinn",
]

REQUIREMENTS = [
    ("40 CFR 60.482-2", "NSPS VVa", "Monthly LDAR monitoring of pumps in light liquid service"),
    ("40 CFR 60.482-7", "NSPS VVa", "Monthly monitoring of valves in gas/vapor service"),
    ("40 CFR 63.1026", "NESHAP UU", "Quarterly connector monitoring"),
    ("40 CFR 60.113b", "NSPS Kb", "Annual visual inspection of internal floating roof seals"),
    ("40 CFR 63.654", "NESHAP CC", "Weekly heat exchanger cooling water sampling"),
    ("40 CFR 60.18", "General Provisions", "Daily flare pilot flame verification"),
]

TEMPLATE_NAMES = {
    "daily": "Pilot flame check",
    "weekly": "Cooling water sample",
    "monthly": "Method 21 monitoring",
    "quarterly": "Connector survey",
    "annually": "Seal inspection",
}

EQUIPMENT_TYPES = ["Pump", "Valve", "Connector", "Tank", "Heat Exchanger", "Flare"]
PROCESS_UNITS = ["Crude Unit 1", "Crude Unit 2", "FCC", "Alky", "Tank Farm", "Utilities"]
TASK_STATUSES = ["open", "open", "assigned", "pending", "submitted", "approved", "closed"]


def rand_date(days_back: int = 30, days_forward: int = 90) -> str:
    today = dt.date.today()
    offset = random.randint(-days_back, days_forward)
    return (today + dt.timedelta(days=offset)).isoformat()


def clear_previous_sample(conn):
    """Delete sample sites and everything that hangs off them."""
    site_ids = [row["id"] for row in conn.execute("SELECT id FROM sites WHERE name LIKE ?", (f"{SAMPLE_MARKER}%",)).fetchall()]
    for site_id in site_ids:
        conn.execute(
            "DELETE FROM tasks WHERE equipment_id IN (SELECT id FROM equipment WHERE equipment_site_id = ?)", (site_id,)
        )
        conn.execute(
            "DELETE FROM equipment_requirements WHERE equipment_id IN (SELECT id FROM equipment WHERE equipment_site_id = ?)",
            (site_id,),
        )
        conn.execute("DELETE FROM equipment WHERE equipment_site_id = ?", (site_id,))
        conn.execute("DELETE FROM requirements WHERE site_id = ?", (site_id,))
        conn.execute("DELETE FROM users WHERE site_id = ? AND email LIKE 'sample%@compliance.local'", (site_id,))
        conn.execute("DELETE FROM sites WHERE id = ?", (site_id,))
    conn.commit()
    return len(site_ids)


def parse_args():
    parser = argparse.ArgumentParser(description="Load deterministic sample data.")
    parser.add_argument(
        "--cleanup-only",
        action="store_true",
        help=f"Only remove {SAMPLE_MARKER} sites and their data; do not generate new rows.",
    )
    parser.add_argument("--equipment-per-site", type=int, default=24)
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    random.seed(RANDOM_SEED)
    ensure_bootstrap()
    conn = db_connect()
    try:
        removed = clear_previous_sample(conn)
        if args.cleanup_only:
            print("SAMPLE_DATA_REMOVED", {"sites": removed})
            return 0

        counts = {"sites": 0, "users": 0, "equipment": 0, "requirements": 0, "task_templates": 0, "tasks": 0}
        roles = [opt["value"] for opt in USER_ROLES]
        frequencies = [opt["value"] for opt in FREQUENCY_OPTIONS]
        user_idx = 0
        for site_name, client in SITES:
            site = store.create_site(conn, f"{SAMPLE_MARKER} {site_name}", client)
            counts["sites"] += 1

            user_ids = []
            for _ in range(3):
                name = NAMES[user_idx % len(NAMES)]
                user_idx += 1
                user = store.create_user(conn, name, f"sample{user_idx}@compliance.local", random.choice(roles), site["id"])
                user_ids.append(user["id"])
                counts["users"] += 1

            templates = []
            for citation, regulation, summary in REQUIREMENTS:
                requirement = store.create_requirement(
                    conn,
                    {
                        "citation": citation,
                        "regulation_name": regulation,
                        "requirement_summary": summary,
                        "site_id": site["id"],
                    },
                )
                counts["requirements"] += 1
                frequency = random.choice(frequencies)
                templates.append(
                    store.create_task_template(
                        conn,
                        {
                            "requirement_id": requirement["id"],
                            "task_name": TEMPLATE_NAMES[frequency],
                            "task_description": f"{frequency.title()} check for {citation}",
                            "frequency": frequency,
                        },
                    )
                )
                counts["task_templates"] += 1

            for i in range(args.equipment_per_site):
                equipment_type = random.choice(EQUIPMENT_TYPES)
                equipment = store.create_equipment(
                    conn,
                    {
                        # Tags like P-2 and P-10 exercise numeric-aware sorting.
                        "asset_tag": f"{equipment_type[0]}-{i + 1}",
                        "description": f"{equipment_type} {i + 1}",
                        "equipment_site_id": site["id"],
                        "equipment_type": equipment_type,
                        "process_unit": random.choice(PROCESS_UNITS),
                        "regulation_name": random.choice(REQUIREMENTS)[1],
                    },
                )
                counts["equipment"] += 1
                for template in random.sample(templates, k=random.randint(0, 3)):
                    store.ensure_equipment_requirement(conn, equipment["id"], template["requirement_id"])
                    status = random.choice(TASK_STATUSES)
                    assignee = random.choice(user_ids) if status != "open" else None
                    store.create_task(conn, template["id"], equipment["id"], rand_date(15, 60), status, assignee)
                    counts["tasks"] += 1

        print("SAMPLE_DATA_LOADED", counts)
        return 0
    finally:
        conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
