"""
Typed error hierarchy for the governance core.

Every failure raised by the services carries a stable machine-readable
``code`` and the HTTP status the API surface maps it to, so callers catch
by type instead of parsing messages:

    GovernanceError
    +-- ValidationError          422  malformed input, rule violation
    |   +-- InvalidCodeError     422  unknown, consumed or expired bank code
    +-- AuthenticationError      401  no principal on the request
    +-- ForbiddenError           403  principal lacks the permission
    +-- NotFoundError            404  referenced entity does not exist
    +-- ConflictError            409  duplicate, in use, illegal transition
    +-- ServiceError             503  store unavailable or timed out
    |   +-- ConcurrencyConflictError  retry budget exhausted
    +-- RevisionConflictError         store-internal, never leaves the writer
"""

from __future__ import annotations

from typing import Any


class GovernanceError(Exception):
    """Base class for all governance-core errors."""

    code: str = "GOVERNANCE_ERROR"
    http_status: int = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(GovernanceError):
    """Input failed a domain rule before any write happened."""

    code = "VALIDATION_ERROR"
    http_status = 422


class InvalidCodeError(ValidationError):
    """Bank validation code is unknown, already consumed or expired."""

    code = "INVALID_VALIDATION_CODE"


class AuthenticationError(GovernanceError):
    code = "AUTHENTICATION_REQUIRED"
    http_status = 401


class ForbiddenError(GovernanceError):
    code = "FORBIDDEN"
    http_status = 403


class NotFoundError(GovernanceError):
    code = "NOT_FOUND"
    http_status = 404


class ConflictError(GovernanceError):
    """Duplicate entity, entity in use, or a transition the state machine forbids."""

    code = "CONFLICT"
    http_status = 409


class ServiceError(GovernanceError):
    """The record store failed or timed out."""

    code = "SERVICE_UNAVAILABLE"
    http_status = 503
    retryable: bool = False


class ConcurrencyConflictError(ServiceError):
    """Optimistic write lost the race on every attempt; safe to retry later."""

    code = "CONCURRENT_MODIFICATION"
    retryable = True


class RevisionConflictError(GovernanceError):
    """Conditional write saw a different revision than expected."""

    code = "REVISION_CONFLICT"
    http_status = 409

    def __init__(self, collection: str, record_id: str, expected: int | None, actual: int | None) -> None:
        super().__init__(
            f"Revision conflict on {collection}/{record_id}: expected={expected} actual={actual}",
            collection=collection,
            record_id=record_id,
            expected=expected,
            actual=actual,
        )
        self.expected = expected
        self.actual = actual
