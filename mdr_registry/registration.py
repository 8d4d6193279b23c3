"""Registration status lifecycle.

Candidate -> Recorded -> Qualified -> Standard -> Preferred Standard, one step
at a time. Retired and Superseded are absorbing and reachable from any
status at or above Recorded. Once an item is Recorded it can only move up,
or out via Retired/Superseded; it can never be deleted.
"""
from __future__ import annotations

from typing import Iterable

from .errors import IllegalTransitionError
from .models import RegistrationStatus

S = RegistrationStatus

PROGRESSION = (S.CANDIDATE, S.RECORDED, S.QUALIFIED, S.STANDARD, S.PREFERRED_STANDARD)
TERMINAL = frozenset({S.RETIRED, S.SUPERSEDED})

# Explicitly permitted backward moves; none are allowed at or above Recorded.
REVERSE_TRANSITIONS: frozenset[tuple[RegistrationStatus, RegistrationStatus]] = frozenset()


def standing(status: RegistrationStatus) -> int:
    """Rank within the progression; terminal states rank above everything."""
    if status in TERMINAL:
        return len(PROGRESSION)
    return PROGRESSION.index(status)


def is_locked(status: RegistrationStatus) -> bool:
    return status != S.CANDIDATE


def allowed_targets(current: RegistrationStatus) -> frozenset[RegistrationStatus]:
    if current in TERMINAL:
        return frozenset()
    targets = set()
    i = PROGRESSION.index(current)
    if i + 1 < len(PROGRESSION):
        targets.add(PROGRESSION[i + 1])
    if current != S.CANDIDATE:
        targets |= TERMINAL
    targets |= {t for (f, t) in REVERSE_TRANSITIONS if f == current}
    return frozenset(targets)


def check_transition(current: RegistrationStatus | str, target: RegistrationStatus | str) -> RegistrationStatus:
    current = RegistrationStatus(current)
    try:
        target = RegistrationStatus(target)
    except ValueError:
        raise IllegalTransitionError(str(current.value), str(target), "unknown status") from None

    if current in TERMINAL:
        raise IllegalTransitionError(current.value, target.value, f"{current.value} is final")
    if target == current:
        raise IllegalTransitionError(current.value, target.value, "item already has this status")
    if target in TERMINAL and current == S.CANDIDATE:
        raise IllegalTransitionError(current.value, target.value,
                                     "a Candidate cannot be retired or superseded; delete it instead")
    if is_locked(current) and target not in TERMINAL and standing(target) < standing(current):
        raise IllegalTransitionError(current.value, target.value, "registration at or above Recorded is irreversible")
    if target not in allowed_targets(current):
        raise IllegalTransitionError(current.value, target.value, "statuses advance one step at a time")
    return target


def can_delete(statuses: Iterable[RegistrationStatus]) -> bool:
    """A hard delete is only possible while every version is still a Candidate."""
    return all(s == S.CANDIDATE for s in statuses)


def can_revise(status: RegistrationStatus) -> bool:
    return status not in TERMINAL
