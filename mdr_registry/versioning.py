"""Versioning Engine: creates and revises items as new versions in their log.

An item is never edited in place; every content change and every decided
transition request appends a version. The only in-place update is the
``requested_status`` marker on the current version while a request is open.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Mapping, Optional

from . import registration
from .attributes import AttributeSchema
from .catalog import CURRENT, CatalogStore, Selector, Snapshot
from .errors import IllegalTransitionError, ItemInUseError, NotFoundError
from .models import ItemVariant, RegistrationStatus, Version
from .util import new_uuid
from .validation import validate

logger = logging.getLogger(__name__)

ID_PREFIX = {
    ItemVariant.DATA_SET_DEFINITION: "dsd",
    ItemVariant.DATA_ELEMENT: "de",
    ItemVariant.VALUE_DOMAIN: "vd",
}


def references_of(variant: ItemVariant, attributes: Mapping[str, Any]) -> dict[str, str]:
    if variant == ItemVariant.DATA_ELEMENT and attributes.get("value_domain_id"):
        return {"value_domain": attributes["value_domain_id"]}
    return {}


class VersioningEngine:
    def __init__(self, store: CatalogStore):
        self.store = store

    def _resolver(self, conn: sqlite3.Connection):
        def resolve(item_id: str) -> Optional[Version]:
            try:
                return self.store.get(item_id, CURRENT, conn)
            except NotFoundError:
                return None
        return resolve

    def normalize(self, variant: ItemVariant, attributes: Mapping[str, Any], conn: sqlite3.Connection,
                  *, leaving_candidate: bool = False) -> dict[str, Any]:
        return validate(
            variant,
            attributes,
            schema=AttributeSchema.load(conn),
            resolve=self._resolver(conn),
            leaving_candidate=leaving_candidate,
        )

    # --- writes ---

    def create_item(self, variant: ItemVariant | str, attributes: Mapping[str, Any],
                    actor: Optional[str] = None) -> tuple[str, int]:
        variant = ItemVariant(variant)
        item_id = new_uuid(ID_PREFIX[variant])
        with self.store.writing(item_id) as conn:
            normalized = self.normalize(variant, attributes, conn)
            number = self.store.create(
                item_id,
                variant,
                Snapshot(
                    status=RegistrationStatus.CANDIDATE,
                    attributes=normalized,
                    changed_by=actor,
                    references=references_of(variant, normalized),
                ),
                conn,
            )
        logger.info("created %s %s (%s) by %s", variant.value, item_id, normalized["name"], actor)
        return item_id, number

    def revise_item(self, item_id: str, expected_base: int, attributes: Mapping[str, Any],
                    actor: Optional[str] = None, note: Optional[str] = None) -> int:
        with self.store.writing(item_id) as conn:
            current = self.store.get(item_id, CURRENT, conn)
            if not registration.can_revise(current.status):
                raise IllegalTransitionError(current.status.value, current.status.value,
                                             f"{current.status.value} items cannot be revised")
            leaving = current.status != RegistrationStatus.CANDIDATE or current.requested_status is not None
            normalized = self.normalize(current.variant, attributes, conn, leaving_candidate=leaving)
            number = self.store.put(
                item_id,
                Snapshot(
                    status=current.status,
                    attributes=normalized,
                    requested_status=current.requested_status,
                    note=note,
                    changed_by=actor,
                    references=references_of(current.variant, normalized),
                ),
                expected_base=expected_base,
                conn=conn,
            )
        logger.info("revised %s to v%d by %s", item_id, number, actor)
        return number

    def commit_outcome(self, conn: sqlite3.Connection, item_id: str, status: RegistrationStatus, *,
                       request_id: str, note: Optional[str], actor: Optional[str]) -> int:
        """Record a decided request as the next version (caller holds the item lock)."""
        current = self.store.get(item_id, CURRENT, conn)
        return self.store.put(
            item_id,
            Snapshot(
                status=status,
                attributes=current.attributes,
                requested_status=None,
                note=note,
                request_id=request_id,
                changed_by=actor,
                references=references_of(current.variant, current.attributes),
            ),
            expected_base=current.version,
            conn=conn,
        )

    def check_deletable(self, conn: sqlite3.Connection, item_id: str) -> list[Version]:
        log = self.store.list_versions(item_id, conn)
        if not registration.can_delete(v.status for v in log):
            status = log[-1].status.value
            raise IllegalTransitionError(status, "deleted",
                                         "items that reached Recorded are retired or superseded, never deleted")
        users = self.store.referencing_items(item_id, conn)
        if users:
            raise ItemInUseError(item_id, users)
        return log

    # --- reads ---

    def get_item(self, item_id: str, selector: Selector = CURRENT) -> Version:
        return self.store.get(item_id, selector)

    def list_versions(self, item_id: str) -> list[Version]:
        return self.store.list_versions(item_id)
