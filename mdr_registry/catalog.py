"""Catalog Store: durable, append-only version logs for registry items.

Every write runs under a per-item lock and a ``BEGIN IMMEDIATE`` transaction,
so the next version number is always exactly one above the previous highest.
Reads open their own connection and only ever see committed snapshots.
"""
from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterator, Optional, Sequence, Union

from .db import connect
from .errors import ConflictError, FieldError, NotFoundError, ValidationError
from .models import ItemVariant, RegistrationStatus, Version
from .util import format_ts, parse_ts, stable_json, utc_now

logger = logging.getLogger(__name__)

CURRENT = "current"


@dataclass(frozen=True)
class AsOf:
    """Version selector: the version that was current at ``timestamp``."""

    timestamp: str

    @classmethod
    def at(cls, ts: Union[str, datetime]) -> "AsOf":
        if isinstance(ts, datetime):
            return cls(format_ts(ts))
        try:
            return cls(format_ts(parse_ts(ts)))
        except (AttributeError, TypeError, ValueError):
            raise ValidationError([FieldError("selector", f"not an ISO-8601 timestamp: {ts!r}")]) from None


Selector = Union[int, str, AsOf, datetime]


@dataclass(frozen=True)
class Snapshot:
    """Content of a version to be written; the store assigns number and timestamps."""

    status: RegistrationStatus
    attributes: dict[str, Any]
    requested_status: Optional[RegistrationStatus] = None
    note: Optional[str] = None
    request_id: Optional[str] = None
    changed_by: Optional[str] = None
    references: dict[str, str] = field(default_factory=dict)


def resolve_current(log: Sequence[Version]) -> Optional[Version]:
    """The current version of a log is its highest-numbered version."""
    return max(log, key=lambda v: v.version) if log else None


def resolve_as_of(log: Sequence[Version], timestamp: str) -> Optional[Version]:
    visible = [v for v in log if v.created_at <= timestamp]
    return resolve_current(visible)


class KeyedLocks:
    """One mutex per key, created on demand and dropped when unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


class CatalogStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.item_locks = KeyedLocks()

    # --- connection lifecycle ---

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK;")
                raise
            else:
                conn.execute("COMMIT;")

    @contextmanager
    def writing(self, item_id: str) -> Iterator[sqlite3.Connection]:
        """Serialize mutation of one item: per-item lock plus a write transaction."""
        with self.item_locks.hold(item_id):
            with self.transaction() as conn:
                yield conn

    # --- items ---

    def create(self, item_id: str, variant: ItemVariant, snapshot: Snapshot, conn: sqlite3.Connection) -> int:
        conn.execute(
            "INSERT INTO registry_item(item_id, variant, created_at, created_by) VALUES(?,?,?,?)",
            (item_id, ItemVariant(variant).value, utc_now(), snapshot.changed_by),
        )
        return self.put(item_id, snapshot, expected_base=0, conn=conn)

    def exists(self, item_id: str, conn: Optional[sqlite3.Connection] = None) -> bool:
        if conn is None:
            with self.connection() as c:
                return self.exists(item_id, c)
        return conn.execute("SELECT 1 FROM registry_item WHERE item_id=?", (item_id,)).fetchone() is not None

    def variant(self, item_id: str, conn: Optional[sqlite3.Connection] = None) -> ItemVariant:
        if conn is None:
            with self.connection() as c:
                return self.variant(item_id, c)
        row = conn.execute("SELECT variant FROM registry_item WHERE item_id=?", (item_id,)).fetchone()
        if not row:
            raise NotFoundError("item", item_id)
        return ItemVariant(row["variant"])

    def put(self, item_id: str, snapshot: Snapshot, *, expected_base: Optional[int] = None,
            conn: Optional[sqlite3.Connection] = None) -> int:
        """Append the next version of ``item_id`` and return its number.

        ``expected_base`` is the version the caller built on; if another
        writer got there first the put fails with ConflictError.
        """
        if conn is None:
            with self.writing(item_id) as c:
                return self.put(item_id, snapshot, expected_base=expected_base, conn=c)

        if not self.exists(item_id, conn):
            raise NotFoundError("item", item_id)
        row = conn.execute("SELECT MAX(version) AS v FROM item_version WHERE item_id=?", (item_id,)).fetchone()
        latest = int(row["v"]) if row["v"] is not None else 0
        if expected_base is not None and expected_base != latest:
            raise ConflictError(item_id, expected_base, latest)

        number = latest + 1
        now = utc_now()
        try:
            conn.execute(
                """
                INSERT INTO item_version(
                  item_id, version, created_at, modified_at, registration_status, requested_status,
                  snapshot_json, note, request_id, changed_by
                ) VALUES(?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    item_id, number, now, now,
                    RegistrationStatus(snapshot.status).value,
                    RegistrationStatus(snapshot.requested_status).value if snapshot.requested_status else None,
                    stable_json(snapshot.attributes),
                    snapshot.note, snapshot.request_id, snapshot.changed_by,
                ),
            )
        except sqlite3.IntegrityError:
            # another process won the race for this number
            raise ConflictError(item_id, expected_base, number) from None

        for kind, target in snapshot.references.items():
            conn.execute(
                "INSERT INTO item_reference(source_id, version, target_id, ref_kind) VALUES(?,?,?,?)",
                (item_id, number, target, kind),
            )
        logger.debug("put %s v%d status=%s", item_id, number, RegistrationStatus(snapshot.status).value)
        return number

    def set_requested_status(self, item_id: str, version: int, requested: Optional[RegistrationStatus],
                             conn: sqlite3.Connection) -> None:
        conn.execute(
            "UPDATE item_version SET requested_status=?, modified_at=? WHERE item_id=? AND version=?",
            (RegistrationStatus(requested).value if requested else None, utc_now(), item_id, version),
        )

    def remove(self, item_id: str, conn: sqlite3.Connection) -> None:
        conn.execute("DELETE FROM item_reference WHERE source_id=?", (item_id,))
        conn.execute("DELETE FROM registry_item WHERE item_id=?", (item_id,))

    def referencing_items(self, target_id: str, conn: Optional[sqlite3.Connection] = None) -> list[str]:
        if conn is None:
            with self.connection() as c:
                return self.referencing_items(target_id, c)
        rows = conn.execute(
            "SELECT DISTINCT source_id FROM item_reference WHERE target_id=? ORDER BY source_id", (target_id,)
        ).fetchall()
        return [r["source_id"] for r in rows]

    # --- reads ---

    def list_versions(self, item_id: str, conn: Optional[sqlite3.Connection] = None) -> list[Version]:
        if conn is None:
            with self.connection() as c:
                return self.list_versions(item_id, c)
        rows = conn.execute(
            """
            SELECT v.*, i.variant FROM item_version v
            JOIN registry_item i ON i.item_id = v.item_id
            WHERE v.item_id=?
            ORDER BY v.version
            """,
            (item_id,),
        ).fetchall()
        if not rows:
            raise NotFoundError("item", item_id)
        return [Version.from_row(r) for r in rows]

    def get(self, item_id: str, selector: Selector = CURRENT, conn: Optional[sqlite3.Connection] = None) -> Version:
        if isinstance(selector, datetime):
            selector = AsOf.at(selector)
        log = self.list_versions(item_id, conn)

        if isinstance(selector, bool):
            raise ValidationError([FieldError("selector", "must be a version number, 'current' or a timestamp")])
        if isinstance(selector, int):
            found = next((v for v in log if v.version == selector), None)
        elif selector == CURRENT:
            found = resolve_current(log)
        elif isinstance(selector, AsOf):
            found = resolve_as_of(log, AsOf.at(selector.timestamp).timestamp)
        else:
            raise ValidationError([FieldError("selector", f"unsupported version selector: {selector!r}")])

        if found is None:
            raise NotFoundError("version", (item_id, selector))
        return found

    def item_ids(self, variant: Optional[ItemVariant] = None) -> list[str]:
        with self.connection() as conn:
            if variant is None:
                rows = conn.execute("SELECT item_id FROM registry_item ORDER BY created_at, item_id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT item_id FROM registry_item WHERE variant=? ORDER BY created_at, item_id",
                    (ItemVariant(variant).value,),
                ).fetchall()
        return [r["item_id"] for r in rows]
