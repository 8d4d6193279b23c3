"""Per-registry schema for the free-form ``attributes`` bag.

Organizations extend items and relationships with their own attributes
without schema migrations. Each attribute is declared once with a value type
(string/number/boolean/date), the item variants it applies to, and whether it
is required. Undeclared attributes are rejected.
"""
from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from .errors import FieldError

VALUE_TYPES = ("string", "number", "boolean", "date")

# applies_to entry used for relationship attribute bags
RELATIONSHIP_SCOPE = "Relationship"


@dataclass(frozen=True)
class AttributeDefinition:
    name: str
    value_type: str
    applies_to: tuple[str, ...] = ()   # empty: applies to every variant and to relationships
    required: bool = False
    description: Optional[str] = None

    def applies(self, scope: str) -> bool:
        return not self.applies_to or scope in self.applies_to


def _check_value(value_type: str, value: Any) -> Optional[str]:
    if value_type == "string":
        return None if isinstance(value, str) else "expected a string"
    if value_type == "number":
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return "expected a number"
        return None
    if value_type == "boolean":
        return None if isinstance(value, bool) else "expected a boolean"
    if value_type == "date":
        if not isinstance(value, str):
            return "expected an ISO date string (YYYY-MM-DD)"
        try:
            date.fromisoformat(value)
        except ValueError:
            return "expected an ISO date string (YYYY-MM-DD)"
        return None
    return f"unknown value type {value_type!r}"


@dataclass
class AttributeSchema:
    definitions: dict[str, AttributeDefinition] = field(default_factory=dict)

    def define(self, definition: AttributeDefinition) -> None:
        if definition.value_type not in VALUE_TYPES:
            raise ValueError(f"Unsupported attribute value type: {definition.value_type}")
        self.definitions[definition.name] = definition

    def validate(self, bag: Any, scope: str, *, prefix: str = "attributes") -> list[FieldError]:
        """Return every problem with ``bag`` for an item variant or relationship scope."""
        if bag is None:
            bag = {}
        if not isinstance(bag, Mapping):
            return [FieldError(prefix, "must be a mapping of attribute name to value")]

        errors: list[FieldError] = []
        for key, value in bag.items():
            d = self.definitions.get(key)
            if d is None or not d.applies(scope):
                errors.append(FieldError(f"{prefix}.{key}", f"attribute is not defined for {scope}"))
                continue
            problem = _check_value(d.value_type, value)
            if problem:
                errors.append(FieldError(f"{prefix}.{key}", problem))

        for d in self.definitions.values():
            if d.required and d.applies(scope) and d.name not in bag:
                errors.append(FieldError(f"{prefix}.{d.name}", "required attribute is missing"))
        return errors

    # --- persistence ---

    @classmethod
    def load(cls, conn: sqlite3.Connection) -> "AttributeSchema":
        schema = cls()
        for r in conn.execute("SELECT name, value_type, applies_to, required, description FROM attribute_definition"):
            schema.define(AttributeDefinition(
                name=r["name"],
                value_type=r["value_type"],
                applies_to=tuple(json.loads(r["applies_to"] or "[]")),
                required=bool(r["required"]),
                description=r["description"],
            ))
        return schema

    @staticmethod
    def save_definition(conn: sqlite3.Connection, d: AttributeDefinition) -> None:
        conn.execute(
            """
            INSERT INTO attribute_definition(name, value_type, applies_to, required, description)
            VALUES(?,?,?,?,?)
            ON CONFLICT(name) DO UPDATE SET
              value_type=excluded.value_type,
              applies_to=excluded.applies_to,
              required=excluded.required,
              description=excluded.description
            """,
            (d.name, d.value_type, json.dumps(list(d.applies_to)), int(d.required), d.description),
        )


def definitions_from_json(data: Any) -> Iterable[AttributeDefinition]:
    """Parse ``[{"name": ..., "value_type": ..., "applies_to": [...], "required": bool}]``."""
    if isinstance(data, Mapping):
        data = data.get("attributes", [])
    for entry in data:
        yield AttributeDefinition(
            name=str(entry["name"]),
            value_type=str(entry.get("value_type", "string")),
            applies_to=tuple(entry.get("applies_to") or ()),
            required=bool(entry.get("required", False)),
            description=entry.get("description"),
        )


def load_definitions_file(path: str) -> list[AttributeDefinition]:
    return list(definitions_from_json(json.loads(Path(path).read_text(encoding="utf-8"))))
