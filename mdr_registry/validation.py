"""Item Model: attribute validation and normalization.

Every validator collects all failing fields and raises one ValidationError so
callers can present the problems together.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional

from .attributes import RELATIONSHIP_SCOPE, AttributeSchema
from .errors import FieldError, ValidationError
from .models import (
    Acceptability,
    Cardinality,
    DataType,
    ItemVariant,
    Obligation,
    ValueDomainKind,
    Version,
    Visibility,
)

Resolver = Callable[[str], Optional[Version]]

COMMON_TEXT_FIELDS = ("context", "definition", "origin", "usage_notes", "collection_method_notes")
COMMON_FIELDS = {"name", "tags", "visibility", "attributes", "alternate_definitions", *COMMON_TEXT_FIELDS}

VARIANT_FIELDS = {
    ItemVariant.DATA_SET_DEFINITION: set(),
    ItemVariant.DATA_ELEMENT: {"value_domain_id", "data_type", "object_class", "property", "format", "max_size"},
    ItemVariant.VALUE_DOMAIN: {"kind", "descriptions", "data_type", "columns", "storage_column", "ordered", "values"},
}

RELATIONSHIP_FIELDS = {"name", "definition", "obligation", "condition", "cardinality", "notes", "attributes"}


def _is_text(v: Any) -> bool:
    return isinstance(v, str) and v.strip() != ""


def _enum_value(enum_cls, value: Any):
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _allowed(enum_cls) -> str:
    return ", ".join(e.value for e in enum_cls)


def value_matches_type(data_type: DataType, value: Any) -> bool:
    if data_type == DataType.STRING:
        return isinstance(value, str)
    if data_type == DataType.INTEGER:
        return isinstance(value, int) and not isinstance(value, bool)
    if data_type == DataType.DECIMAL:
        if isinstance(value, bool):
            return False
        if isinstance(value, (int, float)):
            return True
        if isinstance(value, str):
            try:
                Decimal(value)
            except InvalidOperation:
                return False
            return True
        return False
    if data_type == DataType.BOOLEAN:
        return isinstance(value, bool)
    if data_type in (DataType.DATE, DataType.DATETIME):
        if not isinstance(value, str):
            return False
        try:
            if data_type == DataType.DATE:
                date.fromisoformat(value)
            else:
                datetime.fromisoformat(value)
        except ValueError:
            return False
        return True
    return False


def designated_type(vd_attributes: Mapping[str, Any]) -> Optional[DataType]:
    """Type of the value a linked Data Element stores, or None if undetermined."""
    kind = _enum_value(ValueDomainKind, vd_attributes.get("kind"))
    if kind == ValueDomainKind.ENUMERATED:
        storage = vd_attributes.get("storage_column") or "code"
        for col in _columns(vd_attributes):
            if col["name"] == storage:
                return _enum_value(DataType, col["data_type"])
        return None
    return _enum_value(DataType, vd_attributes.get("data_type"))


def _columns(vd_attributes: Mapping[str, Any]) -> list[dict[str, Any]]:
    cols = [dict(c) for c in (vd_attributes.get("columns") or [])
            if isinstance(c, Mapping) and c.get("name") != "code"]
    return [{"name": "code", "data_type": DataType.STRING.value}] + cols


def _missing(field: str, errors: list[FieldError], leaving_candidate: bool, message: Optional[str] = None) -> None:
    # Candidates may be saved incomplete; only a name is always required
    if leaving_candidate:
        errors.append(FieldError(field, message or "is required before leaving Candidate"))


def _validate_common(attrs: Mapping[str, Any], errors: list[FieldError], out: dict[str, Any],
                     leaving_candidate: bool) -> None:
    name = attrs.get("name")
    if not _is_text(name):
        errors.append(FieldError("name", "is required and must be a non-empty string"))
    else:
        out["name"] = name

    for f in COMMON_TEXT_FIELDS:
        if f in attrs and attrs[f] is not None:
            if not isinstance(attrs[f], str):
                errors.append(FieldError(f, "must be a string"))
            else:
                out[f] = attrs[f]

    if leaving_candidate and not _is_text(attrs.get("definition")):
        errors.append(FieldError("definition", "is required before leaving Candidate"))

    if "tags" in attrs and attrs["tags"] is not None:
        tags = attrs["tags"]
        if isinstance(tags, str) or not all(isinstance(t, str) for t in tags or []):
            errors.append(FieldError("tags", "must be a collection of strings"))
        else:
            out["tags"] = sorted(set(tags))

    vis = _enum_value(Visibility, attrs.get("visibility") or Visibility.PUBLIC.value)
    if vis is None:
        errors.append(FieldError("visibility", f"must be one of {_allowed(Visibility)}"))
    else:
        out["visibility"] = vis.value

    if "alternate_definitions" in attrs and attrs["alternate_definitions"] is not None:
        alts = attrs["alternate_definitions"]
        if not isinstance(alts, list):
            errors.append(FieldError("alternate_definitions", "must be a list"))
        else:
            normalized = []
            for i, alt in enumerate(alts):
                p = f"alternate_definitions[{i}]"
                if not isinstance(alt, Mapping):
                    errors.append(FieldError(p, "must be a mapping"))
                    continue
                entry = {}
                for f in ("context", "name", "definition", "language"):
                    v = alt.get(f)
                    if v is not None and not isinstance(v, str):
                        errors.append(FieldError(f"{p}.{f}", "must be a string"))
                    elif v is not None:
                        entry[f] = v
                if not _is_text(alt.get("name")) and not _is_text(alt.get("definition")):
                    errors.append(FieldError(p, "needs a localized name or definition"))
                acc = _enum_value(Acceptability, alt.get("acceptability", Acceptability.ACCEPTED.value))
                if acc is None:
                    errors.append(FieldError(f"{p}.acceptability", f"must be one of {_allowed(Acceptability)}"))
                else:
                    entry["acceptability"] = acc.value
                normalized.append(entry)
            out["alternate_definitions"] = normalized


def _validate_value_domain(attrs: Mapping[str, Any], errors: list[FieldError], out: dict[str, Any],
                           leaving_candidate: bool) -> None:
    if attrs.get("kind") is None:
        _missing("kind", errors, leaving_candidate)
        for f in sorted(VARIANT_FIELDS[ItemVariant.VALUE_DOMAIN] - {"kind"}):
            if f in attrs:
                errors.append(FieldError(f, "needs a value domain kind"))
        return
    kind = _enum_value(ValueDomainKind, attrs["kind"])
    if kind is None:
        errors.append(FieldError("kind", f"must be one of {_allowed(ValueDomainKind)}"))
        return
    out["kind"] = kind.value

    if kind == ValueDomainKind.DESCRIBED:
        descriptions = attrs.get("descriptions")
        if descriptions is None:
            _missing("descriptions", errors, leaving_candidate,
                     "a described value domain needs at least one description")
        elif not isinstance(descriptions, list) or not descriptions or not all(_is_text(d) for d in descriptions):
            errors.append(FieldError("descriptions", "a described value domain needs at least one description"))
        else:
            out["descriptions"] = list(descriptions)
        if attrs.get("data_type") is None:
            _missing("data_type", errors, leaving_candidate)
        else:
            dt = _enum_value(DataType, attrs["data_type"])
            if dt is None:
                errors.append(FieldError("data_type", f"must be one of {_allowed(DataType)}"))
            else:
                out["data_type"] = dt.value
        for f in ("columns", "storage_column", "values"):
            if f in attrs:
                errors.append(FieldError(f, "only applies to enumerated value domains"))
        return

    if "descriptions" in attrs:
        errors.append(FieldError("descriptions", "only applies to described value domains"))

    raw_cols = attrs.get("columns") or []
    col_types: dict[str, DataType] = {"code": DataType.STRING}
    out_cols = []
    if not isinstance(raw_cols, list):
        errors.append(FieldError("columns", "must be a list"))
        raw_cols = []
    for i, col in enumerate(raw_cols):
        p = f"columns[{i}]"
        if not isinstance(col, Mapping) or not _is_text(col.get("name")):
            errors.append(FieldError(p, "needs a name"))
            continue
        dt = _enum_value(DataType, col.get("data_type"))
        if dt is None:
            errors.append(FieldError(f"{p}.data_type", f"must be one of {_allowed(DataType)}"))
            continue
        if col["name"] in ("code", "meaning") or col["name"] in col_types:
            errors.append(FieldError(f"{p}.name", f"duplicate or reserved column {col['name']!r}"))
            continue
        col_types[col["name"]] = dt
        out_cols.append({"name": col["name"], "data_type": dt.value})
    out["columns"] = out_cols

    storage = attrs.get("storage_column", "code")
    if storage not in col_types:
        errors.append(FieldError("storage_column", f"unknown column {storage!r}"))
    else:
        out["storage_column"] = storage

    if "ordered" in attrs:
        if not isinstance(attrs["ordered"], bool):
            errors.append(FieldError("ordered", "must be a boolean"))
        else:
            out["ordered"] = attrs["ordered"]

    values = attrs.get("values")
    if values is None:
        _missing("values", errors, leaving_candidate, "an enumerated value domain needs a list of values")
        return
    if not isinstance(values, list):
        errors.append(FieldError("values", "an enumerated value domain needs a list of values"))
        return
    seen: set[str] = set()
    out_values = []
    for i, v in enumerate(values):
        p = f"values[{i}]"
        if not isinstance(v, Mapping):
            errors.append(FieldError(p, "must be a mapping"))
            continue
        code = v.get("code")
        if not _is_text(code):
            errors.append(FieldError(f"{p}.code", "is required"))
        elif code in seen:
            errors.append(FieldError(f"{p}.code", f"duplicate code {code!r}"))
        else:
            seen.add(code)
        meaning = v.get("meaning")
        if meaning is not None and not isinstance(meaning, str):
            errors.append(FieldError(f"{p}.meaning", "must be a string"))
        extra = v.get("extra") or {}
        if not isinstance(extra, Mapping):
            errors.append(FieldError(f"{p}.extra", "must be a mapping"))
            extra = {}
        for col, val in extra.items():
            ct = col_types.get(col)
            if ct is None or col == "code":
                errors.append(FieldError(f"{p}.extra.{col}", "column is not declared"))
            elif not value_matches_type(ct, val):
                errors.append(FieldError(f"{p}.extra.{col}", f"expected {ct.value}"))
        if storage in col_types and storage != "code" and storage not in extra:
            errors.append(FieldError(f"{p}.extra.{storage}", "storage column value is required"))
        entry = {"code": code, "meaning": meaning}
        if extra:
            entry["extra"] = dict(extra)
        out_values.append(entry)
    out["values"] = out_values


def _validate_data_element(attrs: Mapping[str, Any], errors: list[FieldError], out: dict[str, Any],
                           resolve: Optional[Resolver], leaving_candidate: bool) -> None:
    dt = None
    if attrs.get("data_type") is None:
        _missing("data_type", errors, leaving_candidate)
    else:
        dt = _enum_value(DataType, attrs["data_type"])
        if dt is None:
            errors.append(FieldError("data_type", f"must be one of {_allowed(DataType)}"))
        else:
            out["data_type"] = dt.value

    vd_id = attrs.get("value_domain_id")
    if vd_id is None:
        _missing("value_domain_id", errors, leaving_candidate,
                 "a data element must reference exactly one value domain")
    elif not _is_text(vd_id):
        errors.append(FieldError("value_domain_id", "a data element must reference exactly one value domain"))
    else:
        out["value_domain_id"] = vd_id
        vd = resolve(vd_id) if resolve else None
        if resolve is not None:
            if vd is None:
                errors.append(FieldError("value_domain_id", f"unknown item {vd_id}"))
            elif vd.variant != ItemVariant.VALUE_DOMAIN:
                errors.append(FieldError("value_domain_id", f"{vd_id} is a {vd.variant.value}, not a value domain"))
            elif dt is not None:
                storage_type = designated_type(vd.attributes)
                if storage_type != dt:
                    errors.append(FieldError(
                        "data_type",
                        f"{dt.value} does not match the value domain storage type "
                        f"{storage_type.value if storage_type else 'undefined'}",
                    ))

    for f in ("object_class", "property", "format"):
        if f in attrs and attrs[f] is not None:
            if not isinstance(attrs[f], str):
                errors.append(FieldError(f, "must be a string"))
            else:
                out[f] = attrs[f]
    if leaving_candidate:
        for f in ("object_class", "property"):
            if not _is_text(attrs.get(f)):
                errors.append(FieldError(f, "is required before leaving Candidate"))

    if "max_size" in attrs and attrs["max_size"] is not None:
        ms = attrs["max_size"]
        if isinstance(ms, bool) or not isinstance(ms, int) or ms <= 0:
            errors.append(FieldError("max_size", "must be a positive integer"))
        else:
            out["max_size"] = ms


def validate(
    variant: ItemVariant | str,
    attributes: Mapping[str, Any],
    *,
    schema: Optional[AttributeSchema] = None,
    resolve: Optional[Resolver] = None,
    leaving_candidate: bool = False,
) -> dict[str, Any]:
    """Validate and normalize item attributes; raise ValidationError listing every failing field.

    ``resolve`` looks up the current version of a referenced item; without it
    references are checked for shape only.
    """
    errors: list[FieldError] = []
    v = _enum_value(ItemVariant, variant)
    if v is None:
        raise ValidationError([FieldError("variant", f"must be one of {_allowed(ItemVariant)}")])
    if not isinstance(attributes, Mapping):
        raise ValidationError([FieldError("attributes", "must be a mapping")])

    out: dict[str, Any] = {}
    for key in attributes:
        if key not in COMMON_FIELDS and key not in VARIANT_FIELDS[v]:
            errors.append(FieldError(key, f"is not a {v.value} attribute"))

    _validate_common(attributes, errors, out, leaving_candidate)
    if v == ItemVariant.VALUE_DOMAIN:
        _validate_value_domain(attributes, errors, out, leaving_candidate)
    elif v == ItemVariant.DATA_ELEMENT:
        _validate_data_element(attributes, errors, out, resolve, leaving_candidate)

    errors.extend((schema or AttributeSchema()).validate(attributes.get("attributes"), v.value))
    if attributes.get("attributes"):
        out["attributes"] = dict(attributes["attributes"])

    if errors:
        raise ValidationError(errors)
    return out


def validate_relationship(
    attrs: Mapping[str, Any],
    source: Optional[Version],
    target: Optional[Version],
    *,
    source_id: str,
    target_id: str,
    schema: Optional[AttributeSchema] = None,
) -> dict[str, Any]:
    errors: list[FieldError] = []
    out: dict[str, Any] = {}

    if source is None:
        errors.append(FieldError("source_id", f"unknown item {source_id}"))
    elif source.variant != ItemVariant.DATA_SET_DEFINITION:
        errors.append(FieldError("source_id", "relationships start at a data set definition"))
    if target is None:
        errors.append(FieldError("target_id", f"unknown item {target_id}"))
    elif target.variant not in (ItemVariant.DATA_SET_DEFINITION, ItemVariant.DATA_ELEMENT):
        errors.append(FieldError("target_id", "relationships end at a data set definition or data element"))

    for key in attrs:
        if key not in RELATIONSHIP_FIELDS:
            errors.append(FieldError(key, "is not a relationship attribute"))

    for f in ("name", "definition"):
        if not _is_text(attrs.get(f)):
            errors.append(FieldError(f, "is required"))
        else:
            out[f] = attrs[f]

    obligation = _enum_value(Obligation, attrs.get("obligation"))
    if obligation is None:
        errors.append(FieldError("obligation", f"must be one of {_allowed(Obligation)}"))
    else:
        out["obligation"] = obligation.value
        condition = attrs.get("condition")
        if obligation == Obligation.CONDITIONAL:
            if not _is_text(condition):
                errors.append(FieldError("condition", "is required when obligation is Conditional"))
            else:
                out["condition"] = condition
        elif condition:
            errors.append(FieldError("condition", "only applies when obligation is Conditional"))

    cardinality = _enum_value(Cardinality, attrs.get("cardinality"))
    if cardinality is None:
        errors.append(FieldError("cardinality", f"must be one of {_allowed(Cardinality)}"))
    else:
        out["cardinality"] = cardinality.value

    notes = attrs.get("notes")
    if notes is not None:
        if not isinstance(notes, str):
            errors.append(FieldError("notes", "must be a string"))
        else:
            out["notes"] = notes

    errors.extend((schema or AttributeSchema()).validate(attrs.get("attributes"), RELATIONSHIP_SCOPE))
    out["attributes"] = dict(attrs.get("attributes") or {})

    if errors:
        raise ValidationError(errors)
    return out
