from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional


class RegistryError(Exception):
    """Base class for every error the registry core raises to its callers."""


@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ValidationError(RegistryError):
    """Malformed or incomplete attributes. Carries every failing field at once."""

    def __init__(self, errors: Iterable[FieldError]):
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors) or "invalid attributes")

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]


class ConflictError(RegistryError):
    """Expected base version does not match the current version."""

    def __init__(self, item_id: str, expected: Optional[int], actual: Optional[int]):
        self.item_id = item_id
        self.expected = expected
        self.actual = actual
        super().__init__(f"Version conflict on {item_id}: expected base {expected}, current is {actual}")


class IllegalTransitionError(RegistryError):
    def __init__(self, current: str, target: str, reason: str = ""):
        self.current = current
        self.target = target
        msg = f"Illegal transition {current} -> {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class RequestAlreadyPendingError(RegistryError):
    def __init__(self, item_id: str, request_id: str):
        self.item_id = item_id
        self.request_id = request_id
        super().__init__(f"Item {item_id} already has a pending request {request_id}")


class NotFoundError(RegistryError):
    def __init__(self, kind: str, key: object):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class PermissionDeniedError(RegistryError):
    def __init__(self, principal: Optional[str], action: str):
        self.principal = principal
        self.action = action
        super().__init__(f"Principal {principal!r} may not {action}")


class ItemInUseError(RegistryError):
    """An item cannot be removed while relationships or other items reference it."""

    def __init__(self, item_id: str, referenced_by: Iterable[str]):
        self.item_id = item_id
        self.referenced_by = sorted(set(referenced_by))
        super().__init__(f"Item {item_id} is still referenced by: {', '.join(self.referenced_by)}")


class RequestStateError(RegistryError):
    """Operation not allowed in the approval request's current state."""

    def __init__(self, request_id: str, state: str, action: str):
        self.request_id = request_id
        self.state = state
        self.action = action
        super().__init__(f"Cannot {action} request {request_id} in state {state}")
