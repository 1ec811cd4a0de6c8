"""Error taxonomy for the lending backend.

Every failure the engine reports is a ``LendingError`` carrying a ``kind``
string, so the HTTP and CLI layers can tell a user-facing denial (not found,
policy, conflict) apart from a system fault (constraint, inconsistency).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class DenyReason(str, Enum):
    """Reasons the lending policy may refuse a loan, in evaluation order."""
    USER_NOT_ACTIVE = "user not active"
    NO_COPIES_AVAILABLE = "no copies available"
    LIMIT_REACHED = "lending limit reached"


class LendingError(Exception):
    """Base class for all lending failures."""

    kind = "lending_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "detail": self.message}


class NotFound(LendingError, LookupError):
    """A referenced user, book or borrowing does not exist."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class PolicyViolation(LendingError):
    """Business rule denial; ``reason`` tells the caller what to fix."""

    kind = "policy_violation"

    def __init__(self, reason: DenyReason, message: Optional[str] = None) -> None:
        super().__init__(message or reason.value)
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        return data


class Conflict(LendingError):
    """Lost a race on inventory. Safe to retry."""

    kind = "conflict"


class ConstraintViolation(LendingError, ValueError):
    """The store rejected a write (unique, foreign key or check constraint)."""

    kind = "constraint_violation"


class InvalidTransition(LendingError):
    kind = "invalid_transition"


class Inconsistency(LendingError):
    """A consistency rule that should always hold was found broken."""

    kind = "inconsistency"
