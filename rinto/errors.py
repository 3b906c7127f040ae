# Domain errors raised by the booking core.
# Every failure kind has a stable machine-readable code; route handlers map them to HTTP responses.
from __future__ import annotations

from typing import Any, Dict, Optional


class BookingError(Exception):
    """Base class for booking-core failures.

    - code: stable identifier exposed to API clients as detail["error"]
    - status_code: HTTP status used by the route layer
    - detail: extra context (conflicting bookings, uncovered window, ...)
    """
    code = "booking_error"
    status_code = 400

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = detail

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.detail}


# Validation errors: caller mistakes
class InvalidInterval(BookingError):
    code = "invalid_interval"
    status_code = 400


class PastStartTime(BookingError):
    code = "past_start_time"
    status_code = 400


class MissingPaymentReference(BookingError):
    code = "missing_payment_reference"
    status_code = 400


# Availability errors: business-rule rejections
class ListingUnavailable(BookingError):
    code = "listing_unavailable"
    status_code = 404


class OutsideAvailability(BookingError):
    code = "outside_availability"
    status_code = 422


# Conflict errors: caller should pick another interval
class SlotConflict(BookingError):
    code = "slot_conflict"
    status_code = 409


# State errors: lifecycle misuse
class InvalidTransition(BookingError):
    code = "invalid_transition"
    status_code = 409


class BookingNotFound(BookingError):
    code = "booking_not_found"
    status_code = 404


# Reviews
class ReviewNotAllowed(BookingError):
    code = "review_not_allowed"
    status_code = 409


class InvalidReview(BookingError):
    code = "invalid_review"
    status_code = 400


# Infrastructure errors: storage, timeouts, transactions
class InternalError(BookingError):
    code = "internal_error"
    status_code = 500


class LockTimeout(InternalError):
    """Raised when the per-listing lock cannot be acquired before the deadline."""

    def __init__(self, key: str, timeout: Optional[float] = None) -> None:
        super().__init__(f"Timed out waiting for lock {key}", lock=key, timeout=timeout)
