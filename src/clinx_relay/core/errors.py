"""Domain error taxonomy shared by services and transport boundaries.

Every failure a core operation can surface carries a machine-checkable
``ErrorKind`` plus a structured ``data`` payload. Route handlers and the
realtime gateway render these; services never raise transport exceptions.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Categories a caller can branch on without parsing messages."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CAPACITY = "capacity"
    TRANSIENT_STORE = "transient_store"
    VALIDATION = "validation"
    CONFLICT = "conflict"


class RelayError(RuntimeError):
    """Base exception for all domain failures.

    Attributes:
        kind: Category used by boundaries to pick a response.
        message: Human readable explanation.
        data: Structured details (counts, limits, identifiers).
    """

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data: dict[str, Any] = dict(data or {})

    def to_payload(self) -> dict[str, Any]:
        """Return the wire representation used by HTTP and socket boundaries."""
        return {"detail": self.message, "code": self.kind.value, "data": self.data}


class AuthenticationError(RelayError):
    """Invalid, expired or missing credentials."""

    kind = ErrorKind.AUTHENTICATION


class AuthorizationError(RelayError):
    """Valid identity without the membership, role or permission required."""

    kind = ErrorKind.AUTHORIZATION


class NotFoundError(RelayError):
    """Referenced conversation, message, user, team or invite does not exist."""

    kind = ErrorKind.NOT_FOUND


class CapacityError(RelayError):
    """A team's member limit would be exceeded."""

    kind = ErrorKind.CAPACITY

    def __init__(
        self,
        message: str,
        *,
        current: int,
        limit: int,
        pending: int | None = None,
    ) -> None:
        data: dict[str, Any] = {"current_members": current, "limit": limit}
        if pending is not None:
            data["pending_invites"] = pending
            data["total"] = current + pending
        super().__init__(message, data=data)
        self.current = current
        self.limit = limit
        self.pending = pending


class TransientStoreError(RelayError):
    """The persistence layer stayed unreachable after bounded retries."""

    kind = ErrorKind.TRANSIENT_STORE


class ValidationError(RelayError):
    """Malformed input such as an empty message or an unknown role."""

    kind = ErrorKind.VALIDATION


class ConflictError(RelayError):
    """The request clashes with existing state (duplicate member, used invite)."""

    kind = ErrorKind.CONFLICT


__all__ = [
    "ErrorKind",
    "RelayError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "CapacityError",
    "TransientStoreError",
    "ValidationError",
    "ConflictError",
]
