from __future__ import annotations

import logging
import sqlite3
from typing import Optional, Protocol

from .errors import NotFoundError
from .models import Role, RoleAssignment
from .util import new_uuid, utc_now

logger = logging.getLogger(__name__)


class RoleProvider(Protocol):
    def holds(self, principal: str, role: Role, commission_id: Optional[str] = None,
              at: Optional[str] = None) -> bool:
        """Does ``principal`` hold ``role`` (scoped to ``commission_id``) at time ``at``?"""
        ...


def _to_assignment(r: sqlite3.Row) -> RoleAssignment:
    return RoleAssignment(
        assignment_id=r["assignment_id"],
        principal=r["principal"],
        role=Role(r["role"]),
        commission_id=r["commission_id"],
        granted_at=r["granted_at"],
        revoked_at=r["revoked_at"],
        granted_by=r["granted_by"],
    )


class RoleDirectory:
    """Role assignments kept with validity ranges, so past questions keep their answers.

    Revoking a role closes the range instead of deleting the row; decisions
    taken while the role was held stay valid.
    """

    def __init__(self, store):
        self.store = store

    def assign(self, principal: str, role: Role | str, commission_id: Optional[str] = None,
               granted_by: Optional[str] = None) -> RoleAssignment:
        role = Role(role)
        if role == Role.ADVISORY_COMMISSION and not commission_id:
            raise ValueError("advisory commission membership needs a commission id")
        if role != Role.ADVISORY_COMMISSION:
            commission_id = None
        assignment = RoleAssignment(
            assignment_id=new_uuid("ra"),
            principal=principal,
            role=role,
            commission_id=commission_id,
            granted_at=utc_now(),
            granted_by=granted_by,
        )
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO role_assignment(assignment_id, principal, role, commission_id, granted_at, granted_by)
                VALUES(?,?,?,?,?,?)
                """,
                (assignment.assignment_id, principal, role.value, commission_id, assignment.granted_at, granted_by),
            )
        logger.info("role %s granted to %s%s", role.value, principal, f" ({commission_id})" if commission_id else "")
        return assignment

    def revoke(self, principal: str, role: Role | str, commission_id: Optional[str] = None) -> int:
        role = Role(role)
        with self.store.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE role_assignment SET revoked_at=?
                WHERE principal=? AND role=? AND IFNULL(commission_id,'')=? AND revoked_at IS NULL
                """,
                (utc_now(), principal, role.value, commission_id or ""),
            )
            revoked = cur.rowcount
        if revoked == 0:
            raise NotFoundError("role assignment", (principal, role.value, commission_id))
        logger.info("role %s revoked from %s", role.value, principal)
        return revoked

    def holds(self, principal: str, role: Role, commission_id: Optional[str] = None,
              at: Optional[str] = None) -> bool:
        at = at or utc_now()
        sql = (
            "SELECT 1 FROM role_assignment WHERE principal=? AND role=? "
            "AND granted_at <= ? AND (revoked_at IS NULL OR revoked_at > ?)"
        )
        params: list = [principal, Role(role).value, at, at]
        if commission_id is not None:
            sql += " AND commission_id=?"
            params.append(commission_id)
        with self.store.connection() as conn:
            return conn.execute(sql + " LIMIT 1", params).fetchone() is not None

    def assignments_of(self, principal: str, *, include_revoked: bool = False) -> list[RoleAssignment]:
        sql = "SELECT * FROM role_assignment WHERE principal=?"
        if not include_revoked:
            sql += " AND revoked_at IS NULL"
        with self.store.connection() as conn:
            rows = conn.execute(sql + " ORDER BY granted_at", (principal,)).fetchall()
        return [_to_assignment(r) for r in rows]
