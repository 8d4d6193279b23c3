from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .db import connect
from .services import REQUIRED_TABLES, ensure_schema_applied, missing_tables

REQUIRED_OPERATIONS = [
    "create_item",
    "revise_item",
    "request_transition",
    "record_authority_decision",
    "record_committee_decision",
    "submit_advisory_opinion",
    "add_relationship",
    "get_item",
    "delete_item",
    "withdraw_request",
]


@dataclass
class DiagnosticResult:
    ok: bool
    lines: list[str]


def run_diagnostics(db_path: str | None = None) -> DiagnosticResult:
    """Lightweight startup diagnostics.

    - Checks that the package and its bundled schema are importable/readable
    - Checks that the service façade exposes every registry operation
    - Optionally opens ``db_path`` and reports missing tables (schema is applied first)

    Safe to run headless and against a fresh file.
    """
    lines: list[str] = []
    ok = True

    try:
        from mdr_registry.services import RegistryServices
        lines.append("OK: mdr_registry import")
    except Exception as e:
        return DiagnosticResult(ok=False, lines=[f"FAIL: import mdr_registry: {e}"])

    schema = Path(__file__).resolve().parent / "migrations" / "schema.sql"
    if schema.exists():
        lines.append(f"OK: schema file present ({schema})")
    else:
        ok = False
        lines.append(f"FAIL: missing schema.sql at {schema}")

    missing_ops = [op for op in REQUIRED_OPERATIONS if not callable(getattr(RegistryServices, op, None))]
    if missing_ops:
        ok = False
        lines.append("FAIL: missing operations: " + ", ".join(missing_ops))
    else:
        lines.append("OK: all registry operations available")

    if db_path:
        try:
            conn = connect(db_path)
            try:
                ensure_schema_applied(conn)
                missing = missing_tables(conn)
            finally:
                conn.close()
        except Exception as e:
            ok = False
            lines.append(f"FAIL: cannot open database {db_path}: {e}")
        else:
            if missing:
                ok = False
                lines.append("FAIL: missing tables: " + ", ".join(missing))
            else:
                lines.append(f"OK: database {db_path} has {len(REQUIRED_TABLES)} core tables")

    return DiagnosticResult(ok=ok, lines=lines)
