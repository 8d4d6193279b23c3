"""Approval Workflow Engine.

Each transition request runs its own small state machine:

    Opened -> UnderAuthorityReview -> [UnderCommitteeReview -> [UnderAdvisoryReview]]
           -> Decided -> Closed

The Registration Authority decides alone or escalates to the Control
Committee. The Committee may consult Advisory Commissions, whose opinions are
recorded but never decide anything. A decision drives exactly one
registration status commit through the Versioning Engine, in the same
transaction that closes the request.

Lock order is always item, then request.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from . import registration
from .catalog import CURRENT, CatalogStore, KeyedLocks
from .errors import (
    FieldError,
    NotFoundError,
    PermissionDeniedError,
    RequestAlreadyPendingError,
    RequestStateError,
    ValidationError,
)
from .models import (
    ApprovalRequest,
    CloseReason,
    Decision,
    Opinion,
    OpinionRecord,
    Outcome,
    RegistrationStatus,
    RequestEvent,
    RequestState,
    Role,
)
from .notify import NotificationSink, StatusEvent, deliver
from .roles import RoleProvider
from .util import new_uuid, utc_now
from .versioning import VersioningEngine

logger = logging.getLogger(__name__)

RS = RequestState

WITHDRAWABLE = frozenset({RS.OPENED, RS.UNDER_AUTHORITY_REVIEW})
AUTHORITY_STATES = frozenset({RS.OPENED, RS.UNDER_AUTHORITY_REVIEW})
COMMITTEE_STATES = frozenset({RS.UNDER_COMMITTEE_REVIEW, RS.UNDER_ADVISORY_REVIEW})


class ApprovalWorkflow:
    def __init__(self, store: CatalogStore, versioning: VersioningEngine,
                 roles: Optional[RoleProvider] = None, sink: Optional[NotificationSink] = None):
        self.store = store
        self.versioning = versioning
        self.roles = roles
        self.sink = sink
        self.request_locks = KeyedLocks()

    # --- helpers ---

    def authorize(self, actor: Optional[str], role: Role, action: str, commission_id: Optional[str] = None) -> None:
        if self.roles is None:
            return
        if not actor or not self.roles.holds(actor, role, commission_id, utc_now()):
            logger.debug("denied %s to %s (needs %s)", action, actor, role.value)
            raise PermissionDeniedError(actor, action)

    def _load(self, conn: sqlite3.Connection, request_id: str) -> ApprovalRequest:
        row = conn.execute("SELECT * FROM approval_request WHERE request_id=?", (request_id,)).fetchone()
        if not row:
            raise NotFoundError("request", request_id)
        return ApprovalRequest.from_row(row)

    def _open_for_item(self, conn: sqlite3.Connection, item_id: str) -> Optional[ApprovalRequest]:
        row = conn.execute(
            "SELECT * FROM approval_request WHERE item_id=? AND state<>?",
            (item_id, RS.CLOSED.value),
        ).fetchone()
        return ApprovalRequest.from_row(row) if row else None

    @contextmanager
    def _locked(self, request_id: str) -> Iterator[tuple[sqlite3.Connection, ApprovalRequest]]:
        with self.store.connection() as conn:
            item_id = self._load(conn, request_id).item_id
        with self.store.writing(item_id) as conn, self.request_locks.hold(request_id):
            yield conn, self._load(conn, request_id)

    def _move(self, conn: sqlite3.Connection, req: ApprovalRequest, to: RequestState,
              actor: Optional[str], note: Optional[str] = None, **columns) -> None:
        now = utc_now()
        assignments = {"state": to.value, "updated_at": now, **columns}
        if to == RS.CLOSED:
            assignments["closed_at"] = now
        cols = ", ".join(f"{k}=?" for k in assignments)
        conn.execute(f"UPDATE approval_request SET {cols} WHERE request_id=?",
                     [*assignments.values(), req.request_id])
        conn.execute(
            "INSERT INTO request_event(request_id, from_state, to_state, actor, note, ts) VALUES(?,?,?,?,?,?)",
            (req.request_id, req.state.value, to.value, actor, note, now),
        )

    def _notify_all(self, events: Iterable[StatusEvent]) -> None:
        for e in events:
            deliver(self.sink, e)

    def _event(self, kind: str, req: ApprovalRequest, old: Optional[RegistrationStatus],
               new: Optional[RegistrationStatus], actor: Optional[str], detail: Optional[str] = None) -> StatusEvent:
        return StatusEvent(
            kind=kind,
            item_id=req.item_id,
            old_status=old.value if old else None,
            new_status=new.value if new else None,
            actor=actor,
            timestamp=utc_now(),
            request_id=req.request_id,
            detail=detail,
        )

    def _decide(self, conn: sqlite3.Connection, req: ApprovalRequest, decision: Decision,
                rationale: Optional[str], actor: Optional[str]) -> list[StatusEvent]:
        current = self.store.get(req.item_id, CURRENT, conn)
        self._move(conn, req, RS.DECIDED, actor, rationale,
                   decision=decision.value, rationale=rationale, decided_by=actor)

        if decision == Decision.APPROVED:
            new_status = registration.check_transition(current.status, req.target_status)
            outcome = Outcome.APPROVED
            note = rationale
        else:
            new_status = current.status
            outcome = Outcome.REJECTED
            note = f"Rejected request for {req.target_status.value}" + (f": {rationale}" if rationale else "")

        number = self.versioning.commit_outcome(
            conn, req.item_id, new_status, request_id=req.request_id, note=note, actor=actor,
        )
        decided = self._load(conn, req.request_id)
        self._move(conn, decided, RS.CLOSED, actor, None,
                   outcome=outcome.value, close_reason=CloseReason.DECIDED.value, committed_version=number)
        logger.info("request %s on %s %s by %s; item now v%d %s",
                    req.request_id, req.item_id, outcome.value, actor, number, new_status.value)

        events = [self._event("decision", req, current.status, new_status, actor, outcome.value)]
        if new_status != current.status:
            events.append(self._event("status_change", req, current.status, new_status, actor))
        return events

    # --- operations ---

    def open_request(self, item_id: str, target_status: RegistrationStatus | str,
                     actor: str) -> ApprovalRequest:
        """Open the single pending request for an item and mark the current version."""
        self.authorize(actor, Role.PROPOSER, "request a transition")
        with self.store.writing(item_id) as conn:
            current = self.store.get(item_id, CURRENT, conn)
            pending = self._open_for_item(conn, item_id)
            if pending is not None:
                raise RequestAlreadyPendingError(item_id, pending.request_id)
            target = registration.check_transition(current.status, target_status)
            if current.status == RegistrationStatus.CANDIDATE:
                self.versioning.normalize(current.variant, current.attributes, conn, leaving_candidate=True)

            request_id = new_uuid("req")
            now = utc_now()
            try:
                conn.execute(
                    """
                    INSERT INTO approval_request(
                      request_id, item_id, proposer, base_version, from_status, target_status,
                      state, opened_at, updated_at
                    ) VALUES(?,?,?,?,?,?,?,?,?)
                    """,
                    (request_id, item_id, actor, current.version, current.status.value, target.value,
                     RS.OPENED.value, now, now),
                )
            except sqlite3.IntegrityError:
                other = self._open_for_item(conn, item_id)
                raise RequestAlreadyPendingError(item_id, other.request_id if other else "") from None
            conn.execute(
                "INSERT INTO request_event(request_id, from_state, to_state, actor, note, ts) VALUES(?,?,?,?,?,?)",
                (request_id, None, RS.OPENED.value, actor, f"{current.status.value} -> {target.value}", now),
            )
            self.store.set_requested_status(item_id, current.version, target, conn)
            req = self._load(conn, request_id)
        logger.info("request %s opened on %s: %s -> %s by %s",
                    request_id, item_id, current.status.value, target.value, actor)
        return req

    def start_authority_review(self, request_id: str, actor: str) -> ApprovalRequest:
        self.authorize(actor, Role.REGISTRATION_AUTHORITY, "review requests")
        with self._locked(request_id) as (conn, req):
            if req.state != RS.OPENED:
                raise RequestStateError(request_id, req.state.value, "start authority review of")
            self._move(conn, req, RS.UNDER_AUTHORITY_REVIEW, actor)
            return self._load(conn, request_id)

    def record_authority_decision(self, request_id: str, decision: Decision | str,
                                  rationale: Optional[str], actor: str) -> ApprovalRequest:
        decision = _parse_decision(decision, allowed=(Decision.APPROVED, Decision.REJECTED, Decision.ESCALATE))
        self.authorize(actor, Role.REGISTRATION_AUTHORITY, "decide as registration authority")
        events: list[StatusEvent] = []
        with self._locked(request_id) as (conn, req):
            if req.state not in AUTHORITY_STATES:
                raise RequestStateError(request_id, req.state.value, "record an authority decision on")
            if req.state == RS.OPENED:
                self._move(conn, req, RS.UNDER_AUTHORITY_REVIEW, actor)
                req = self._load(conn, request_id)
            if decision == Decision.ESCALATE:
                self._move(conn, req, RS.UNDER_COMMITTEE_REVIEW, actor, rationale)
                logger.info("request %s escalated to the control committee by %s", request_id, actor)
            else:
                events = self._decide(conn, req, decision, rationale, actor)
            result = self._load(conn, request_id)
        self._notify_all(events)
        return result

    def request_advisory_opinions(self, request_id: str, commission_ids: Iterable[str],
                                  actor: str) -> ApprovalRequest:
        commissions = [c for c in dict.fromkeys(commission_ids) if c]
        if not commissions:
            raise ValidationError([FieldError("commission_ids", "name at least one advisory commission")])
        self.authorize(actor, Role.CONTROL_COMMITTEE, "consult advisory commissions")
        with self._locked(request_id) as (conn, req):
            if req.state not in COMMITTEE_STATES:
                raise RequestStateError(request_id, req.state.value, "consult advisory commissions on")
            merged = list(dict.fromkeys([*req.commissions, *commissions]))
            self._move(conn, req, RS.UNDER_ADVISORY_REVIEW, actor, ", ".join(commissions),
                       commissions_json=json.dumps(merged))
            result = self._load(conn, request_id)
        logger.info("request %s sent to advisory commissions %s", request_id, ", ".join(commissions))
        return result

    def submit_advisory_opinion(self, request_id: str, commission_id: str, member_id: str,
                                opinion: Opinion | str, comment: Optional[str] = None) -> OpinionRecord:
        """Record or replace a member's non-binding opinion.

        Opinions are keyed by (request, commission, member) and need no request
        lock; the write transaction alone orders them against the decision.
        """
        try:
            opinion = Opinion(opinion)
        except ValueError:
            raise ValidationError([FieldError("opinion", "must be Favorable, Unfavorable or Abstain")]) from None
        self.authorize(member_id, Role.ADVISORY_COMMISSION, f"give an opinion for {commission_id}", commission_id)
        with self.store.transaction() as conn:
            req = self._load(conn, request_id)
            if req.state != RS.UNDER_ADVISORY_REVIEW:
                raise RequestStateError(request_id, req.state.value, "submit an opinion on")
            if commission_id not in req.commissions:
                raise ValidationError([FieldError("commission_id", f"{commission_id} was not consulted")])
            now = utc_now()
            conn.execute(
                """
                INSERT INTO advisory_opinion(request_id, commission_id, member_id, opinion, comment, submitted_at, updated_at)
                VALUES(?,?,?,?,?,?,?)
                ON CONFLICT(request_id, commission_id, member_id) DO UPDATE SET
                  opinion=excluded.opinion,
                  comment=excluded.comment,
                  updated_at=excluded.updated_at
                """,
                (request_id, commission_id, member_id, opinion.value, comment, now, now),
            )
            row = conn.execute(
                "SELECT * FROM advisory_opinion WHERE request_id=? AND commission_id=? AND member_id=?",
                (request_id, commission_id, member_id),
            ).fetchone()
        logger.info("opinion %s on %s from %s/%s", opinion.value, request_id, commission_id, member_id)
        return OpinionRecord.from_row(row)

    def record_committee_decision(self, request_id: str, decision: Decision | str,
                                  rationale: Optional[str], actor: str) -> ApprovalRequest:
        decision = _parse_decision(decision, allowed=(Decision.APPROVED, Decision.REJECTED))
        self.authorize(actor, Role.CONTROL_COMMITTEE, "decide as control committee")
        with self._locked(request_id) as (conn, req):
            if req.state not in COMMITTEE_STATES:
                raise RequestStateError(request_id, req.state.value, "record a committee decision on")
            events = self._decide(conn, req, decision, rationale, actor)
            result = self._load(conn, request_id)
        self._notify_all(events)
        return result

    def withdraw_request(self, request_id: str, actor: str) -> ApprovalRequest:
        with self._locked(request_id) as (conn, req):
            if actor != req.proposer:
                raise PermissionDeniedError(actor, f"withdraw request {request_id}")
            if req.state not in WITHDRAWABLE:
                raise RequestStateError(request_id, req.state.value, "withdraw")
            current = self.store.get(req.item_id, CURRENT, conn)
            self.store.set_requested_status(req.item_id, current.version, None, conn)
            self._move(conn, req, RS.CLOSED, actor, "withdrawn by proposer",
                       outcome=Outcome.WITHDRAWN.value, close_reason=CloseReason.WITHDRAWN.value)
            result = self._load(conn, request_id)
        logger.info("request %s withdrawn by %s", request_id, actor)
        self._notify_all([self._event("withdrawn", result, current.status, current.status, actor)])
        return result

    def close_for_removed_item(self, conn: sqlite3.Connection, item_id: str,
                               actor: Optional[str]) -> Optional[StatusEvent]:
        """Close the open request of an item being hard-deleted (caller holds the item lock)."""
        req = self._open_for_item(conn, item_id)
        if req is None:
            return None
        with self.request_locks.hold(req.request_id):
            self._move(conn, req, RS.DECIDED, actor, "item removed", decision=Decision.REJECTED.value)
            req = self._load(conn, req.request_id)
            self._move(conn, req, RS.CLOSED, actor, None, outcome=Outcome.REJECTED.value,
                       close_reason=CloseReason.ITEM_REMOVED.value)
        logger.info("request %s closed: item %s removed", req.request_id, item_id)
        return self._event("closed", req, req.from_status, None, actor, CloseReason.ITEM_REMOVED.value)

    # --- reads ---

    def get_request(self, request_id: str) -> ApprovalRequest:
        with self.store.connection() as conn:
            return self._load(conn, request_id)

    def pending_request(self, item_id: str) -> Optional[ApprovalRequest]:
        with self.store.connection() as conn:
            return self._open_for_item(conn, item_id)

    def requests_for_item(self, item_id: str) -> list[ApprovalRequest]:
        with self.store.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM approval_request WHERE item_id=? ORDER BY opened_at", (item_id,)
            ).fetchall()
        return [ApprovalRequest.from_row(r) for r in rows]

    def list_opinions(self, request_id: str) -> list[OpinionRecord]:
        with self.store.connection() as conn:
            self._load(conn, request_id)
            rows = conn.execute(
                "SELECT * FROM advisory_opinion WHERE request_id=? ORDER BY commission_id, member_id",
                (request_id,),
            ).fetchall()
        return [OpinionRecord.from_row(r) for r in rows]

    def history(self, request_id: str) -> list[RequestEvent]:
        with self.store.connection() as conn:
            self._load(conn, request_id)
            rows = conn.execute(
                "SELECT * FROM request_event WHERE request_id=? ORDER BY event_id", (request_id,)
            ).fetchall()
        return [
            RequestEvent(
                request_id=r["request_id"],
                from_state=RequestState(r["from_state"]) if r["from_state"] else None,
                to_state=RequestState(r["to_state"]),
                actor=r["actor"],
                note=r["note"],
                ts=r["ts"],
            )
            for r in rows
        ]


def _parse_decision(value: Decision | str, *, allowed: tuple[Decision, ...]) -> Decision:
    try:
        decision = Decision(value)
    except ValueError:
        decision = None
    if decision not in allowed:
        raise ValidationError([FieldError("decision", "must be one of " + ", ".join(d.value for d in allowed))])
    return decision
