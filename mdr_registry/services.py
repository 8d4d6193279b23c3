from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Optional, Sequence

from .attributes import AttributeDefinition, AttributeSchema, load_definitions_file
from .catalog import CURRENT, CatalogStore, Selector
from .config import RegistryConfig
from .db import connect
from .graph import RelationshipGraph, RelationshipView
from .models import (
    ApprovalRequest,
    Decision,
    Direction,
    ItemVariant,
    Opinion,
    OpinionRecord,
    RegistrationStatus,
    RequestEvent,
    Role,
    RoleAssignment,
    Version,
)
from .notify import NotificationSink, deliver
from .roles import RoleDirectory
from .util import read_text
from .versioning import VersioningEngine
from .workflow import ApprovalWorkflow

logger = logging.getLogger(__name__)

# NOTE:
# - sqlite3.Connection's context manager does NOT close the connection.
# - Every operation below opens its own short-lived connection through the
#   catalog store; nothing here holds a connection between calls.

REQUIRED_TABLES = ("registry_item", "item_version", "relationship", "approval_request", "advisory_opinion")


def _table_exists(conn, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
        (name,),
    ).fetchone()
    return row is not None


def missing_tables(conn) -> list[str]:
    return [t for t in REQUIRED_TABLES if not _table_exists(conn, t)]


def ensure_schema_applied(conn) -> None:
    """Apply the bundled schema if any required table is missing.

    Pointing the registry at an empty SQLite file is enough to start using it.
    The schema only uses CREATE ... IF NOT EXISTS, so re-applying is harmless.
    """
    if missing_tables(conn):
        conn.executescript(read_text("migrations/schema.sql"))
        conn.commit()


@contextmanager
def db_conn(db_path: str) -> Iterator[Any]:
    """Context manager that opens *and closes* an sqlite connection."""
    conn = connect(db_path)
    try:
        ensure_schema_applied(conn)
        yield conn
    finally:
        conn.close()


@dataclass
class RegistryServices:
    """Transport-agnostic request/response façade over the registry core.

    Wires the catalog store, versioning engine, relationship graph and
    approval workflow together and exposes one method per operation. Role
    checks run only when ``enforce_roles`` is set; the identity provider that
    authenticates principals sits outside the core.
    """

    db_path: str
    enforce_roles: bool = False
    sink: Optional[NotificationSink] = None
    store: CatalogStore = field(init=False)
    versioning: VersioningEngine = field(init=False)
    graph: RelationshipGraph = field(init=False)
    directory: RoleDirectory = field(init=False)
    workflow: ApprovalWorkflow = field(init=False)

    def __post_init__(self) -> None:
        with db_conn(self.db_path):
            pass
        self.store = CatalogStore(self.db_path)
        self.versioning = VersioningEngine(self.store)
        self.graph = RelationshipGraph(self.store)
        self.directory = RoleDirectory(self.store)
        self.workflow = ApprovalWorkflow(
            self.store,
            self.versioning,
            roles=self.directory if self.enforce_roles else None,
            sink=self.sink,
        )

    @classmethod
    def from_config(cls, config: RegistryConfig, sink: Optional[NotificationSink] = None) -> "RegistryServices":
        svc = cls(db_path=config.db_path, enforce_roles=config.enforce_roles, sink=sink)
        if config.attribute_schema_path:
            for d in load_definitions_file(config.attribute_schema_path):
                svc.define_attribute(d)
        return svc

    def _require(self, actor: Optional[str], role: Role, action: str) -> None:
        self.workflow.authorize(actor, role, action)

    # --- items ---

    def create_item(self, variant: ItemVariant | str, attributes: Mapping[str, Any],
                    actor: Optional[str] = None) -> tuple[str, int]:
        self._require(actor, Role.PROPOSER, "create items")
        return self.versioning.create_item(variant, attributes, actor)

    def revise_item(self, item_id: str, expected_base: int, attributes: Mapping[str, Any],
                    actor: Optional[str] = None, note: Optional[str] = None) -> int:
        self._require(actor, Role.PROPOSER, "revise items")
        return self.versioning.revise_item(item_id, expected_base, attributes, actor, note)

    def get_item(self, item_id: str, selector: Selector = CURRENT) -> Version:
        return self.versioning.get_item(item_id, selector)

    def list_versions(self, item_id: str) -> list[Version]:
        return self.versioning.list_versions(item_id)

    def list_items(self, variant: Optional[ItemVariant | str] = None) -> list[Version]:
        ids = self.store.item_ids(ItemVariant(variant) if variant else None)
        return [self.store.get(i) for i in ids]

    def delete_item(self, item_id: str, actor: Optional[str] = None) -> None:
        """Hard-delete a Candidate-only item that nothing references."""
        self._require(actor, Role.PROPOSER, "delete items")
        with self.store.writing(item_id) as conn:
            self.versioning.check_deletable(conn, item_id)
            self.graph.assert_detached(conn, item_id)
            closed = self.workflow.close_for_removed_item(conn, item_id, actor)
            self.store.remove(item_id, conn)
        logger.info("deleted item %s by %s", item_id, actor)
        if closed is not None:
            deliver(self.sink, closed)

    # --- transition requests ---

    def request_transition(self, item_id: str, target_status: RegistrationStatus | str, actor: str) -> str:
        return self.workflow.open_request(item_id, target_status, actor).request_id

    def start_authority_review(self, request_id: str, actor: str) -> ApprovalRequest:
        return self.workflow.start_authority_review(request_id, actor)

    def record_authority_decision(self, request_id: str, decision: Decision | str,
                                  rationale: Optional[str], actor: str) -> ApprovalRequest:
        return self.workflow.record_authority_decision(request_id, decision, rationale, actor)

    def request_advisory_opinions(self, request_id: str, commission_ids: Sequence[str],
                                  actor: str) -> ApprovalRequest:
        return self.workflow.request_advisory_opinions(request_id, commission_ids, actor)

    def submit_advisory_opinion(self, request_id: str, commission_id: str, member_id: str,
                                opinion: Opinion | str, comment: Optional[str] = None) -> OpinionRecord:
        return self.workflow.submit_advisory_opinion(request_id, commission_id, member_id, opinion, comment)

    def record_committee_decision(self, request_id: str, decision: Decision | str,
                                  rationale: Optional[str], actor: str) -> ApprovalRequest:
        return self.workflow.record_committee_decision(request_id, decision, rationale, actor)

    def withdraw_request(self, request_id: str, actor: str) -> ApprovalRequest:
        return self.workflow.withdraw_request(request_id, actor)

    def get_request(self, request_id: str) -> ApprovalRequest:
        return self.workflow.get_request(request_id)

    def pending_request(self, item_id: str) -> Optional[ApprovalRequest]:
        return self.workflow.pending_request(item_id)

    def list_opinions(self, request_id: str) -> list[OpinionRecord]:
        return self.workflow.list_opinions(request_id)

    def request_history(self, request_id: str) -> list[RequestEvent]:
        return self.workflow.history(request_id)

    # --- relationships ---

    def add_relationship(self, source_id: str, target_id: str, attrs: Mapping[str, Any],
                         actor: Optional[str] = None) -> str:
        self._require(actor, Role.PROPOSER, "add relationships")
        return self.graph.add_relationship(source_id, target_id, attrs, actor).relationship_id

    def remove_relationship(self, relationship_id: str, actor: Optional[str] = None) -> None:
        self._require(actor, Role.PROPOSER, "remove relationships")
        self.graph.remove_relationship(relationship_id, actor)

    def relationships_of(self, item_id: str, direction: Direction | str = Direction.OUTGOING) -> RelationshipView:
        return self.graph.relationships_of(item_id, direction)

    # --- registry administration ---

    def assign_role(self, principal: str, role: Role | str, commission_id: Optional[str] = None,
                    granted_by: Optional[str] = None) -> RoleAssignment:
        return self.directory.assign(principal, role, commission_id, granted_by)

    def revoke_role(self, principal: str, role: Role | str, commission_id: Optional[str] = None) -> int:
        return self.directory.revoke(principal, role, commission_id)

    def define_attribute(self, definition: AttributeDefinition) -> None:
        AttributeSchema().define(definition)  # rejects unknown value types
        with self.store.transaction() as conn:
            AttributeSchema.save_definition(conn, definition)
        logger.info("attribute %s defined (%s)", definition.name, definition.value_type)

    def attribute_schema(self) -> AttributeSchema:
        with self.store.connection() as conn:
            return AttributeSchema.load(conn)
