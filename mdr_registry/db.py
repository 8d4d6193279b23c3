from __future__ import annotations

import sqlite3

BUSY_TIMEOUT_MS = 30000


def connect(db_path: str) -> sqlite3.Connection:
    # isolation_level=None: callers issue BEGIN IMMEDIATE / COMMIT themselves.
    conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_MS / 1000, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS};")
    return conn
