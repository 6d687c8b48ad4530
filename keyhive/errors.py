"""KeyHive error types.

Error codes are stable strings for programmatic handling and map 1:1 onto the
``error.code`` field of API error responses.
"""

from __future__ import annotations

from typing import Any


class KeyHiveError(Exception):
    """Base error for all KeyHive domain exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Render the API error envelope."""
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }
        if request_id:
            error["request_id"] = request_id
        return {"error": error}


class NotFoundError(KeyHiveError):
    """Resource not found (404)."""

    code = "not_found"
    message = "Resource not found"
    status_code = 404


class UnauthenticatedError(KeyHiveError):
    """No actor identity supplied (401)."""

    code = "unauthenticated"
    message = "Actor identity required"
    status_code = 401


class UnauthorizedError(KeyHiveError):
    """Actor is not allowed to perform the operation (403)."""

    code = "unauthorized"
    message = "Actor is not allowed to perform this operation"
    status_code = 403


class ValidationError(KeyHiveError):
    """Request validation error (400)."""

    code = "validation_error"
    message = "Validation error"
    status_code = 400


class KeyAlreadyActiveError(KeyHiveError):
    """Key already has a non-closed assignment (409)."""

    code = "key_already_active"
    message = "Key already has an active assignment"
    status_code = 409


class CellUnavailableError(KeyHiveError):
    """Cell is occupied, out of service or held by another assignment (409)."""

    code = "cell_unavailable"
    message = "Cell is not available"
    status_code = 409


class FobUnavailableError(KeyHiveError):
    """NFC fob is assigned, damaged or bound to another hive (409)."""

    code = "fob_unavailable"
    message = "NFC fob is not available"
    status_code = 409


class HiveUnavailableError(KeyHiveError):
    """Hive is under maintenance or offline (409)."""

    code = "hive_unavailable"
    message = "Hive is not accepting drops"
    status_code = 409


class AlreadyDroppedError(KeyHiveError):
    """ConfirmDrop repeated for an assignment past pending_drop (409)."""

    code = "already_dropped"
    message = "Key has already been dropped for this assignment"
    status_code = 409


class InvalidCodeError(KeyHiveError):
    """Presented code or link does not match (400)."""

    code = "invalid_code"
    message = "Invalid code"
    status_code = 400


class CodeExpiredError(KeyHiveError):
    """Code, token or link is past its expiry or revoked (410)."""

    code = "code_expired"
    message = "This code has expired"
    status_code = 410


class AlreadyUsedError(KeyHiveError):
    """Single-use token has already been consumed (409)."""

    code = "already_used"
    message = "This code has already been used"
    status_code = 409


class WrongStateError(KeyHiveError):
    """Operation is not valid for the assignment's current state (409).

    ``details`` carries ``current_state`` and ``expected_states`` so callers
    can decide whether to refresh, retry or give up.
    """

    code = "wrong_state"
    message = "Operation not allowed in the current state"
    status_code = 409


class StateConflictError(WrongStateError):
    """A concurrent actor advanced the assignment first (409).

    Re-read the assignment and retry if still applicable.
    """

    code = "state_conflict"
    message = "Assignment was modified concurrently"
    status_code = 409


class DisputeAlreadyOpenError(KeyHiveError):
    """Assignment already has an open dispute (409)."""

    code = "dispute_already_open"
    message = "A dispute is already open for this assignment"
    status_code = 409


class StorageError(KeyHiveError):
    """Persistence failure; the operation was rolled back (503)."""

    code = "storage_error"
    message = "Storage failure"
    status_code = 503

