"""
Typed failures raised by the scheduling services.

Every error carries a human readable ``message``, a stable machine ``code``
and the HTTP status the API layer answers with. Conflict errors are kept
fine grained so the client can tell the user *why* a request was refused.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BookingError(Exception):
    status_code = 400
    default_code = "booking_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, "details": self.details}


class ValidationError(BookingError):
    """Malformed input; raised before any transaction opens."""

    status_code = 400
    default_code = "validation_error"


class NotFoundError(BookingError):
    status_code = 404
    default_code = "not_found"


class UnauthorizedError(BookingError):
    status_code = 401
    default_code = "unauthorized"


class ForbiddenError(BookingError):
    status_code = 403
    default_code = "forbidden"


class InternalError(BookingError):
    status_code = 500
    default_code = "internal_error"


class ConflictError(BookingError):
    """A rule checked against current state failed. Terminal for the request."""

    status_code = 409
    default_code = "conflict"


class SlotConflict(ConflictError):
    default_code = "slot_conflict"


class SlotFull(ConflictError):
    default_code = "slot_full"


class CreditUnavailable(ConflictError):
    default_code = "credit_unavailable"


class AlreadyBooked(ConflictError):
    default_code = "already_booked"


class DuplicateAbsence(ConflictError):
    default_code = "duplicate_absence"
