#!/usr/bin/env python3
"""Database overview and loan/inventory integrity checks for the tool library."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))


EXPECTED_TABLES = [
    "tools",
    "hardware_samples",
    "loans",
    "maintenance_records",
    "profiles",
    "user_roles",
    "impact_metrics",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "loans": [
        "id",
        "user_id",
        "tool_id",
        "hardware_sample_id",
        "status",
        "requested_at",
        "approved_at",
        "due_date",
        "returned_at",
        "fine_amount",
    ],
    "tools": ["id", "name", "category", "condition", "daily_rate", "is_available", "total_loans"],
    "hardware_samples": ["id", "name", "sample_type", "max_loan_hours", "is_available"],
    "user_roles": ["id", "user_id", "role"],
}

# name -> SQL returning a violation count
INTEGRITY_CHECKS: dict[str, str] = {
    "loans:item_reference_not_exactly_one": """
        SELECT COUNT(*) FROM loans
        WHERE (tool_id IS NULL AND hardware_sample_id IS NULL)
           OR (tool_id IS NOT NULL AND hardware_sample_id IS NOT NULL)
    """,
    "loans:unknown_status": """
        SELECT COUNT(*) FROM loans
        WHERE status NOT IN ('pending', 'approved', 'rejected', 'active', 'returned', 'overdue')
    """,
    "loans:returned_at_mismatch": """
        SELECT COUNT(*) FROM loans
        WHERE (status = 'returned' AND returned_at IS NULL)
           OR (status <> 'returned' AND returned_at IS NOT NULL)
    """,
    "loans:approved_at_missing": """
        SELECT COUNT(*) FROM loans
        WHERE status IN ('approved', 'active', 'overdue', 'returned') AND approved_at IS NULL
    """,
    "loans:stored_overdue": "SELECT COUNT(*) FROM loans WHERE status = 'overdue'",
    "tools:available_while_on_loan": """
        SELECT COUNT(*) FROM tools t
        WHERE t.is_available = TRUE AND EXISTS (
            SELECT 1 FROM loans l
            WHERE l.tool_id = t.id AND l.status IN ('approved', 'active', 'overdue')
        )
    """,
    "hardware_samples:available_while_on_loan": """
        SELECT COUNT(*) FROM hardware_samples h
        WHERE h.is_available = TRUE AND EXISTS (
            SELECT 1 FROM loans l
            WHERE l.hardware_sample_id = h.id AND l.status IN ('approved', 'active', 'overdue')
        )
    """,
    "user_roles:unknown_role": """
        SELECT COUNT(*) FROM user_roles
        WHERE role NOT IN ('community_member', 'architect', 'admin', 'tool_doctor')
    """,
}

CHECK_TABLES = {
    "loans": ["loans"],
    "tools": ["tools", "loans"],
    "hardware_samples": ["hardware_samples", "loans"],
    "user_roles": ["user_roles"],
}


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _table_names(engine: Engine) -> set[str]:
    return set(inspect(engine).get_table_names())


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    inspector = inspect(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = _table_names(engine)
    checks: list[CheckResult] = []
    for name, sql in INTEGRITY_CHECKS.items():
        needed = CHECK_TABLES[name.split(":", 1)[0]]
        if any(table not in present for table in needed):
            checks.append(CheckResult(name, False, "table missing"))
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = _table_names(engine)
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_status_breakdown(engine: Engine) -> None:
    _print_section("Loans by stored status")
    if "loans" not in _table_names(engine):
        print("loans: missing")
        return
    with engine.connect() as conn:
        rows = conn.execute(text("SELECT status, COUNT(*) FROM loans GROUP BY status ORDER BY status")).all()
    for status, count in rows:
        print(f"{status}: {int(count or 0)}")


def _create_schema(engine: Engine) -> None:
    from db.base import Base
    import models.library_models  # noqa: F401

    Base.metadata.create_all(engine)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Tool library DB overview")
    parser.add_argument("--db-url", default=os.environ.get("TOOL_LIBRARY_DB_URL", ""))
    parser.add_argument("--create-schema", action="store_true", help="Create missing tables before checking.")
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("TOOL_LIBRARY_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    if args.create_schema:
        _create_schema(engine)

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", _run_existence_checks(engine))
    _print_results("Column Checks", _run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_status_breakdown(engine)
    return 0 if all(row.ok for row in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
