from __future__ import annotations

from typing import Optional


class LibraryError(Exception):
    """Base class for every error the circulation core raises on purpose."""

    status_code = 500
    code = "unexpected"

    def __init__(self, message: str, *, details: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"success": False, "error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LibraryError):
    status_code = 400
    code = "invalid_input"


class InvalidStatus(ValidationError):
    code = "invalid_status"


class InvalidPickupWindow(ValidationError):
    code = "invalid_pickup_window"


class Unauthenticated(LibraryError):
    status_code = 401
    code = "unauthenticated"


class Unauthorized(LibraryError):
    """The principal is known but does not own the record it acts on."""

    status_code = 403
    code = "unauthorized"


class Forbidden(LibraryError):
    """The principal's role does not allow the operation."""

    status_code = 403
    code = "forbidden"


class NotFound(LibraryError):
    status_code = 404
    code = "not_found"


class OutOfStock(LibraryError):
    status_code = 409
    code = "out_of_stock"


class InvalidStateTransition(LibraryError):
    status_code = 409
    code = "invalid_state_transition"


class ActiveTransactionsExist(LibraryError):
    status_code = 409
    code = "active_transactions_exist"


class DuplicateRating(LibraryError):
    status_code = 409
    code = "duplicate_rating"


class StorageConflict(LibraryError):
    """A concurrent commit changed a record this unit of work depended on."""

    status_code = 503
    code = "storage_conflict"


class Unexpected(LibraryError):
    status_code = 500
    code = "unexpected"
