"""
Reservation Error Taxonomy

Every failure the hold/confirm core can report is a ReservationError
subclass carrying:
- code: stable machine-readable code returned to the widget
- status_code: HTTP status used by the exception handler
- public_message: generic text safe to show to a guest

Internal details go to `message` (logged) and `issues` (field errors).
"""

import enum
from typing import Any, List, Optional


class ErrorCode(str, enum.Enum):
    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"
    HOLD_NOT_FOUND = "HOLD_NOT_FOUND"
    HOLD_EXPIRED = "HOLD_EXPIRED"
    HOLD_ALREADY_CONSUMED = "HOLD_ALREADY_CONSUMED"
    INVALID_GUEST_DETAILS = "INVALID_GUEST_DETAILS"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    TENANT_MISMATCH = "TENANT_MISMATCH"
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    HOURS_NOT_CONFIGURED = "HOURS_NOT_CONFIGURED"
    INVALID_REQUEST = "INVALID_REQUEST"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"


class ReservationError(Exception):
    """Base class for all domain errors of the reservation core"""

    code: ErrorCode = ErrorCode.INVALID_REQUEST
    status_code: int = 400
    public_message: str = "The request could not be processed"

    def __init__(self, message: Optional[str] = None, issues: Optional[List[Any]] = None):
        self.message = message or self.public_message
        self.issues = issues
        super().__init__(self.message)

    def to_dict(self, request_id: Optional[str] = None) -> dict:
        error = {
            "code": self.code.value,
            "message": self.public_message,
        }
        if request_id:
            error["requestId"] = request_id
        if self.issues:
            error["issues"] = self.issues
        return error


class SlotUnavailable(ReservationError):
    code = ErrorCode.SLOT_UNAVAILABLE
    status_code = 409
    public_message = "This time slot is no longer available, please search again"


class HoldNotFound(ReservationError):
    code = ErrorCode.HOLD_NOT_FOUND
    status_code = 404
    public_message = "Booking hold not found, please search again"


class HoldExpired(ReservationError):
    code = ErrorCode.HOLD_EXPIRED
    status_code = 410
    public_message = "Your hold on this time slot has expired, please search again"


class HoldAlreadyConsumed(ReservationError):
    code = ErrorCode.HOLD_ALREADY_CONSUMED
    status_code = 409
    public_message = "This time slot is no longer available, please search again"

    def __init__(self, message: Optional[str] = None, hold=None):
        super().__init__(message)
        self.hold = hold


class InvalidGuestDetails(ReservationError):
    code = ErrorCode.INVALID_GUEST_DETAILS
    status_code = 422
    public_message = "Please check your contact details and try again"


class InvalidTransition(ReservationError):
    code = ErrorCode.INVALID_TRANSITION
    status_code = 409
    public_message = "This booking cannot be moved to the requested status"


class BookingNotFound(ReservationError):
    code = ErrorCode.BOOKING_NOT_FOUND
    status_code = 404
    public_message = "Booking not found"


class TenantMismatch(ReservationError):
    code = ErrorCode.TENANT_MISMATCH
    status_code = 403
    public_message = "This request does not belong to your restaurant"


class TenantNotFound(ReservationError):
    code = ErrorCode.TENANT_NOT_FOUND
    status_code = 404
    public_message = "Restaurant not found"


class BusinessHoursNotConfigured(ReservationError):
    code = ErrorCode.HOURS_NOT_CONFIGURED
    status_code = 422
    public_message = "Online booking is not available for this date"


class InvalidRequest(ReservationError):
    code = ErrorCode.INVALID_REQUEST
    status_code = 400
    public_message = "The request is invalid"

    def to_dict(self, request_id: Optional[str] = None) -> dict:
        # Request shape problems are the caller's own input, safe to echo
        error = super().to_dict(request_id)
        error["message"] = self.message
        return error


class StorageUnavailable(ReservationError):
    code = ErrorCode.STORAGE_UNAVAILABLE
    status_code = 503
    public_message = "Service temporarily unavailable, please try again"


def validation_issues(exc) -> List[dict]:
    """Flatten a pydantic ValidationError into [{field, message}]"""
    issues = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "__root__")
        issues.append({"field": field or None, "message": err.get("msg", "invalid value")})
    return issues
