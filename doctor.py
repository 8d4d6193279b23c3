#!/usr/bin/env python3
from __future__ import annotations

import importlib
import platform
import sys


def check_module(name: str) -> tuple[bool, str]:
    try:
        importlib.import_module(name)
        return True, f"OK: python module {name}"
    except Exception as e:
        return False, f"FAIL: python module {name} -> {e}"


def main() -> int:
    print("MDR Registry Doctor")
    print("-------------------")
    print("Python:", sys.version.split()[0])
    print("Platform:", platform.platform())
    print()

    ok_all = True
    for mod in ["mdr_registry.services", "mdr_registry.workflow", "mdr_registry.__main__"]:
        ok, msg = check_module(mod)
        print(msg)
        ok_all = ok_all and ok

    import sqlite3
    print(f"OK: SQLite {sqlite3.sqlite_version}")
    if sqlite3.sqlite_version_info < (3, 24, 0):
        print("FAIL: SQLite >= 3.24 required (upsert support)")
        ok_all = False

    if ok_all:
        from mdr_registry.diagnostics import run_diagnostics
        db = sys.argv[1] if len(sys.argv) > 1 else None
        diag = run_diagnostics(db)
        for line in diag.lines:
            print(line)
        ok_all = ok_all and diag.ok

    return 0 if ok_all else 2


if __name__ == "__main__":
    raise SystemExit(main())
