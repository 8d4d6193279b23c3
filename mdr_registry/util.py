from __future__ import annotations

import json
import os
import uuid as uuidlib
from datetime import datetime, timezone
from typing import Any

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def read_text(rel_path: str) -> str:
    """
    Read a file bundled with the package by path relative to the package root.
    """
    here = os.path.dirname(os.path.abspath(__file__))
    candidate = os.path.join(here, rel_path)
    if os.path.exists(candidate):
        with open(candidate, "r", encoding="utf-8") as f:
            return f.read()
    raise FileNotFoundError(f"Cannot find {rel_path}")


def new_uuid(prefix: str) -> str:
    return f"{prefix}-{uuidlib.uuid4().hex}"


def utc_now() -> str:
    return format_ts(datetime.now(timezone.utc))


def format_ts(ts: datetime) -> str:
    """Fixed-width UTC timestamp; lexical order equals chronological order."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def stable_json(obj: Any) -> str:
    # Deterministic JSON so equal snapshots serialize to equal text
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
