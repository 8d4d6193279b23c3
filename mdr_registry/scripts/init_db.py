"""
Initialise a registry database (apply schema, optionally load attribute definitions).
"""
from __future__ import annotations

import argparse
from pathlib import Path

from mdr_registry.attributes import AttributeSchema, load_definitions_file
from mdr_registry.db import connect
from mdr_registry.services import ensure_schema_applied


def main() -> None:
    p = argparse.ArgumentParser()
    p.add_argument("--db", default="mdr.sqlite", help="Path to the SQLite DB")
    p.add_argument("--attributes", help="JSON file with free-form attribute definitions")
    args = p.parse_args()

    db_path = Path(args.db)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    definitions = load_definitions_file(args.attributes) if args.attributes else []

    conn = connect(str(db_path))
    try:
        ensure_schema_applied(conn)
        if definitions:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                for d in definitions:
                    AttributeSchema().define(d)
                    AttributeSchema.save_definition(conn, d)
            except Exception:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")
    finally:
        conn.close()

    print(f"OK: DB initialised: {db_path.resolve()}")
    if definitions:
        print(f"OK: {len(definitions)} attribute definitions loaded")


if __name__ == "__main__":
    main()
