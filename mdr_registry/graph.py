"""Relationship Graph: typed, attributed edges between registry items.

A directed multigraph. Edges start at a Data Set Definition and end at a
Data Set Definition or a Data Element; several edges may join the same pair
as long as their names differ. Items with edges attached cannot be deleted.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Iterator, Mapping, Optional

from .attributes import AttributeSchema
from .catalog import CURRENT, CatalogStore
from .errors import FieldError, ItemInUseError, NotFoundError, ValidationError
from .models import Direction, Relationship, Version
from .util import new_uuid, utc_now
from .validation import validate_relationship

logger = logging.getLogger(__name__)

PAGE_SIZE = 200


class RelationshipView:
    """Lazy, finite, restartable sequence of one item's relationships.

    Each iteration re-reads the store page by page, so a fresh ``iter()``
    always starts over and sees committed changes.
    """

    def __init__(self, store: CatalogStore, item_id: str, direction: Direction, page_size: int = PAGE_SIZE):
        self.store = store
        self.item_id = item_id
        self.direction = Direction(direction)
        self.page_size = page_size

    def __iter__(self) -> Iterator[Relationship]:
        column = "source_id" if self.direction == Direction.OUTGOING else "target_id"
        after = ("", "")
        while True:
            with self.store.connection() as conn:
                rows = conn.execute(
                    f"""
                    SELECT * FROM relationship
                    WHERE {column}=? AND (created_at, relationship_id) > (?, ?)
                    ORDER BY created_at, relationship_id
                    LIMIT ?
                    """,
                    (self.item_id, after[0], after[1], self.page_size),
                ).fetchall()
            for r in rows:
                yield Relationship.from_row(r)
            if len(rows) < self.page_size:
                return
            after = (rows[-1]["created_at"], rows[-1]["relationship_id"])


class RelationshipGraph:
    def __init__(self, store: CatalogStore):
        self.store = store

    def _current(self, conn: sqlite3.Connection, item_id: str) -> Optional[Version]:
        try:
            return self.store.get(item_id, CURRENT, conn)
        except NotFoundError:
            return None

    def add_relationship(self, source_id: str, target_id: str, attrs: Mapping[str, Any],
                         actor: Optional[str] = None) -> Relationship:
        # edges belong to their source; serialize on it
        with self.store.writing(source_id) as conn:
            source = self._current(conn, source_id)
            target = self._current(conn, target_id)
            fields = validate_relationship(
                attrs, source, target,
                source_id=source_id, target_id=target_id,
                schema=AttributeSchema.load(conn),
            )
            clash = conn.execute(
                "SELECT relationship_id FROM relationship WHERE source_id=? AND target_id=? AND name=?",
                (source_id, target_id, fields["name"]),
            ).fetchone()
            if clash:
                raise ValidationError([FieldError(
                    "name", f"{fields['name']!r} already names a relationship between these items",
                )])

            rel_id = new_uuid("rel")
            conn.execute(
                """
                INSERT INTO relationship(
                  relationship_id, source_id, target_id, name, definition, obligation, condition_text,
                  cardinality, notes, attributes_json, created_at, created_by
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    rel_id, source_id, target_id, fields["name"], fields["definition"],
                    fields["obligation"], fields.get("condition"), fields["cardinality"],
                    fields.get("notes"), json.dumps(fields["attributes"], sort_keys=True),
                    utc_now(), actor,
                ),
            )
            rel = self._get(conn, rel_id)
        logger.info("relationship %s %s: %s -> %s", rel_id, rel.name, source_id, target_id)
        return rel

    def _get(self, conn: sqlite3.Connection, relationship_id: str) -> Relationship:
        row = conn.execute("SELECT * FROM relationship WHERE relationship_id=?", (relationship_id,)).fetchone()
        if not row:
            raise NotFoundError("relationship", relationship_id)
        return Relationship.from_row(row)

    def get_relationship(self, relationship_id: str) -> Relationship:
        with self.store.connection() as conn:
            return self._get(conn, relationship_id)

    def remove_relationship(self, relationship_id: str, actor: Optional[str] = None) -> None:
        rel = self.get_relationship(relationship_id)
        with self.store.writing(rel.source_id) as conn:
            cur = conn.execute("DELETE FROM relationship WHERE relationship_id=?", (relationship_id,))
            if cur.rowcount == 0:
                raise NotFoundError("relationship", relationship_id)
        logger.info("relationship %s detached by %s", relationship_id, actor)

    def relationships_of(self, item_id: str, direction: Direction | str = Direction.OUTGOING) -> RelationshipView:
        if not self.store.exists(item_id):
            raise NotFoundError("item", item_id)
        return RelationshipView(self.store, item_id, Direction(direction))

    def assert_detached(self, conn: sqlite3.Connection, item_id: str) -> None:
        rows = conn.execute(
            "SELECT relationship_id FROM relationship WHERE source_id=? OR target_id=?",
            (item_id, item_id),
        ).fetchall()
        if rows:
            raise ItemInUseError(item_id, [r["relationship_id"] for r in rows])
