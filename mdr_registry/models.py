from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ItemVariant(str, Enum):
    DATA_SET_DEFINITION = "DataSetDefinition"
    DATA_ELEMENT = "DataElement"
    VALUE_DOMAIN = "ValueDomain"


class RegistrationStatus(str, Enum):
    CANDIDATE = "Candidate"
    RECORDED = "Recorded"
    QUALIFIED = "Qualified"
    STANDARD = "Standard"
    PREFERRED_STANDARD = "Preferred Standard"
    RETIRED = "Retired"
    SUPERSEDED = "Superseded"


class Visibility(str, Enum):
    PUBLIC = "Public"
    RESTRICTED_CATALOG = "RestrictedCatalog"


class Acceptability(str, Enum):
    ACCEPTED = "Accepted"
    DEPRECATED = "Deprecated"
    EXPIRED = "Expired"
    SUPERSEDED = "Superseded"


class DataType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"


class ValueDomainKind(str, Enum):
    DESCRIBED = "Described"
    ENUMERATED = "Enumerated"


class Obligation(str, Enum):
    MANDATORY = "Mandatory"
    OPTIONAL = "Optional"
    CONDITIONAL = "Conditional"


class Cardinality(str, Enum):
    SINGLE = "Single"
    MULTIPLE = "Multiple"


class Direction(str, Enum):
    OUTGOING = "Outgoing"
    INCOMING = "Incoming"


class RequestState(str, Enum):
    OPENED = "Opened"
    UNDER_AUTHORITY_REVIEW = "UnderAuthorityReview"
    UNDER_COMMITTEE_REVIEW = "UnderCommitteeReview"
    UNDER_ADVISORY_REVIEW = "UnderAdvisoryReview"
    DECIDED = "Decided"
    CLOSED = "Closed"


class Decision(str, Enum):
    APPROVED = "Approved"
    REJECTED = "Rejected"
    ESCALATE = "Escalate"


class Outcome(str, Enum):
    APPROVED = "Approved"
    REJECTED = "Rejected"
    WITHDRAWN = "Withdrawn"


class CloseReason(str, Enum):
    DECIDED = "Decided"
    WITHDRAWN = "Withdrawn"
    ITEM_REMOVED = "ItemRemoved"


class Opinion(str, Enum):
    FAVORABLE = "Favorable"
    UNFAVORABLE = "Unfavorable"
    ABSTAIN = "Abstain"


class Role(str, Enum):
    COORDINATOR = "Coordinator"
    SOFTWARE_ADMINISTRATOR = "RegistrySoftwareAdministrator"
    TRAINER = "Trainer"
    PROPOSER = "Proposer"
    REGISTRATION_AUTHORITY = "RegistrationAuthority"
    CONTROL_COMMITTEE = "ControlCommitteeMember"
    ADVISORY_COMMISSION = "AdvisoryCommissionMember"


@dataclass(frozen=True)
class Version:
    """One immutable snapshot in an item's version log."""

    item_id: str
    version: int
    variant: ItemVariant
    created_at: str
    modified_at: str
    status: RegistrationStatus
    requested_status: Optional[RegistrationStatus]
    attributes: dict[str, Any]
    note: Optional[str] = None
    request_id: Optional[str] = None
    changed_by: Optional[str] = None

    @property
    def name(self) -> str:
        return str(self.attributes.get("name", ""))

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Version":
        requested = row["requested_status"]
        return cls(
            item_id=row["item_id"],
            version=int(row["version"]),
            variant=ItemVariant(row["variant"]),
            created_at=row["created_at"],
            modified_at=row["modified_at"],
            status=RegistrationStatus(row["registration_status"]),
            requested_status=RegistrationStatus(requested) if requested else None,
            attributes=json.loads(row["snapshot_json"]),
            note=row["note"],
            request_id=row["request_id"],
            changed_by=row["changed_by"],
        )


@dataclass(frozen=True)
class Relationship:
    relationship_id: str
    source_id: str
    target_id: str
    name: str
    definition: str
    obligation: Obligation
    cardinality: Cardinality
    condition: Optional[str] = None
    notes: Optional[str] = None
    attributes: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    created_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Relationship":
        return cls(
            relationship_id=row["relationship_id"],
            source_id=row["source_id"],
            target_id=row["target_id"],
            name=row["name"],
            definition=row["definition"],
            obligation=Obligation(row["obligation"]),
            cardinality=Cardinality(row["cardinality"]),
            condition=row["condition_text"],
            notes=row["notes"],
            attributes=json.loads(row["attributes_json"] or "{}"),
            created_at=row["created_at"],
            created_by=row["created_by"],
        )


@dataclass(frozen=True)
class ApprovalRequest:
    request_id: str
    item_id: str
    proposer: str
    base_version: int
    from_status: RegistrationStatus
    target_status: RegistrationStatus
    state: RequestState
    opened_at: str
    updated_at: str
    decision: Optional[Decision] = None
    outcome: Optional[Outcome] = None
    rationale: Optional[str] = None
    close_reason: Optional[CloseReason] = None
    decided_by: Optional[str] = None
    commissions: tuple[str, ...] = ()
    committed_version: Optional[int] = None
    closed_at: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state != RequestState.CLOSED

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ApprovalRequest":
        return cls(
            request_id=row["request_id"],
            item_id=row["item_id"],
            proposer=row["proposer"],
            base_version=int(row["base_version"]),
            from_status=RegistrationStatus(row["from_status"]),
            target_status=RegistrationStatus(row["target_status"]),
            state=RequestState(row["state"]),
            opened_at=row["opened_at"],
            updated_at=row["updated_at"],
            decision=Decision(row["decision"]) if row["decision"] else None,
            outcome=Outcome(row["outcome"]) if row["outcome"] else None,
            rationale=row["rationale"],
            close_reason=CloseReason(row["close_reason"]) if row["close_reason"] else None,
            decided_by=row["decided_by"],
            commissions=tuple(json.loads(row["commissions_json"] or "[]")),
            committed_version=row["committed_version"],
            closed_at=row["closed_at"],
        )


@dataclass(frozen=True)
class RequestEvent:
    request_id: str
    from_state: Optional[RequestState]
    to_state: RequestState
    actor: Optional[str]
    note: Optional[str]
    ts: str


@dataclass(frozen=True)
class OpinionRecord:
    request_id: str
    commission_id: str
    member_id: str
    opinion: Opinion
    comment: Optional[str]
    submitted_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OpinionRecord":
        return cls(
            request_id=row["request_id"],
            commission_id=row["commission_id"],
            member_id=row["member_id"],
            opinion=Opinion(row["opinion"]),
            comment=row["comment"],
            submitted_at=row["submitted_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class RoleAssignment:
    assignment_id: str
    principal: str
    role: Role
    commission_id: Optional[str]
    granted_at: str
    revoked_at: Optional[str] = None
    granted_by: Optional[str] = None
