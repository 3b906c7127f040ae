# Booking lifecycle: the transition table plus the operations that apply it to stored bookings.
# All status changes go through next_status(); nothing else compares status strings to decide transitions.
from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, repository
from .clock import as_utc, utcnow
from .errors import (
    BookingNotFound,
    InternalError,
    InvalidTransition,
    MissingPaymentReference,
    SlotConflict,
)
from .locks import listing_lock

logger = logging.getLogger("rinto.lifecycle")


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingEvent(str, enum.Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_EXPIRED = "payment_expired"
    CANCEL_REQUESTED = "cancel_requested"
    END_ELAPSED = "end_elapsed"


class PaymentOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"


# Statuses that hold a listing's calendar; only these take part in overlap checks
ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

_TRANSITIONS = {
    (BookingStatus.PENDING, BookingEvent.PAYMENT_SUCCEEDED): BookingStatus.CONFIRMED,
    (BookingStatus.PENDING, BookingEvent.PAYMENT_FAILED): BookingStatus.CANCELLED,
    (BookingStatus.PENDING, BookingEvent.PAYMENT_EXPIRED): BookingStatus.CANCELLED,
    (BookingStatus.PENDING, BookingEvent.CANCEL_REQUESTED): BookingStatus.CANCELLED,
    (BookingStatus.CONFIRMED, BookingEvent.END_ELAPSED): BookingStatus.COMPLETED,
    # Re-running completion is a no-op
    (BookingStatus.COMPLETED, BookingEvent.END_ELAPSED): BookingStatus.COMPLETED,
}

_OUTCOME_EVENTS = {
    PaymentOutcome.SUCCEEDED: BookingEvent.PAYMENT_SUCCEEDED,
    PaymentOutcome.FAILED: BookingEvent.PAYMENT_FAILED,
    PaymentOutcome.EXPIRED: BookingEvent.PAYMENT_EXPIRED,
}

_CANCEL_REASONS = {
    BookingEvent.PAYMENT_FAILED: "payment_failed",
    BookingEvent.PAYMENT_EXPIRED: "payment_timeout",
}


def next_status(current, event) -> BookingStatus:
    """
    Map (current status, event) to the next status.

    Raises InvalidTransition for any pair not in the table; the booking must then be left unchanged.
    """
    current = BookingStatus(current)
    event = BookingEvent(event)
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransition(
            f"Cannot apply {event.value} to a {current.value} booking",
            current_status=current.value,
            event=event.value,
        ) from None


def _load(db: Session, booking_id: int) -> models.Booking:
    booking = repository.get_booking(db, booking_id)
    if booking is None:
        raise BookingNotFound(f"Booking {booking_id} not found", booking_id=booking_id)
    return booking


def _apply(
    db: Session,
    booking: models.Booking,
    event: BookingEvent,
    now: datetime,
    payment_reference: Optional[str] = None,
    cancel_reason: Optional[str] = None,
) -> models.Booking:
    """
    Persist one transition with a status-guarded UPDATE and commit it.

    If another writer moved the booking first, the guard matches no row and the
    caller gets InvalidTransition computed against the status that won.
    """
    current = BookingStatus(booking.status)
    target = next_status(current, event)
    booking_id = booking.id
    try:
        if not repository.update_booking_status(
            db,
            booking_id,
            expected=current.value,
            new_status=target.value,
            now=now,
            payment_reference=payment_reference,
            cancel_reason=cancel_reason,
        ):
            db.rollback()
            latest = _load(db, booking_id)
            next_status(latest.status, event)
            # The winner reached the same target (e.g., two completions); report it unchanged
            return latest
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("booking.transition_failed", extra={"booking_id": booking_id, "event": event.value})
        raise InternalError("Failed to update booking", booking_id=booking_id) from exc

    db.refresh(booking)
    logger.info(
        "booking.transition",
        extra={
            "booking_id": booking_id,
            "listing_id": booking.listing_id,
            "event": event.value,
            "from_status": current.value,
            "to_status": target.value,
        },
    )
    return booking


def on_payment_outcome(
    db: Session,
    booking_id: int,
    outcome,
    reference: Optional[str] = None,
    now: Optional[datetime] = None,
    lock_timeout: Optional[float] = None,
) -> models.Booking:
    """
    Callback entry point for the payment collaborator.

    - succeeded: pending -> confirmed, storing the payment reference. Exclusivity is
      re-validated under the listing lock so two overlapping bookings can never both confirm.
    - failed / expired: pending -> cancelled, which frees the slot immediately.
    """
    outcome = PaymentOutcome(outcome)
    event = _OUTCOME_EVENTS[outcome]
    now = as_utc(now) if now is not None else utcnow()
    booking = _load(db, booking_id)

    if event is not BookingEvent.PAYMENT_SUCCEEDED:
        next_status(booking.status, event)
        return _apply(db, booking, event, now, cancel_reason=_CANCEL_REASONS[event])

    if not reference:
        raise MissingPaymentReference("A successful payment must carry a reference", booking_id=booking_id)
    next_status(booking.status, event)

    with listing_lock(booking.listing_id, timeout=lock_timeout):
        try:
            conflicts = repository.find_overlapping(
                db,
                booking.listing_id,
                as_utc(booking.start_time),
                as_utc(booking.end_time),
                [BookingStatus.CONFIRMED.value],
                exclude_id=booking.id,
            )
        except SQLAlchemyError as exc:
            db.rollback()
            raise InternalError("Failed to check booking exclusivity", booking_id=booking_id) from exc
        if conflicts:
            conflicting_ids = [b.id for b in conflicts]
            db.rollback()
            logger.error(
                "booking.confirm_conflict",
                extra={"booking_id": booking_id, "conflicting_ids": conflicting_ids},
            )
            raise SlotConflict(
                "Another booking for this interval is already confirmed",
                booking_id=booking_id,
                conflicting_booking_ids=conflicting_ids,
            )
        return _apply(db, booking, event, now, payment_reference=reference)


def cancel_booking(
    db: Session,
    booking_id: int,
    now: Optional[datetime] = None,
    reason: str = "cancelled",
) -> models.Booking:
    """Renter/owner cancellation; only pending bookings may be cancelled."""
    now = as_utc(now) if now is not None else utcnow()
    booking = _load(db, booking_id)
    return _apply(db, booking, BookingEvent.CANCEL_REQUESTED, now, cancel_reason=reason)


def complete_booking(db: Session, booking_id: int, now: Optional[datetime] = None) -> models.Booking:
    """
    confirmed -> completed once the rental has ended.

    Already completed bookings are returned unchanged.
    """
    now = as_utc(now) if now is not None else utcnow()
    booking = _load(db, booking_id)
    target = next_status(booking.status, BookingEvent.END_ELAPSED)
    if target.value == booking.status:
        return booking
    if now < as_utc(booking.end_time):
        raise InvalidTransition(
            "Booking has not ended yet",
            current_status=booking.status,
            event=BookingEvent.END_ELAPSED.value,
            end_time=as_utc(booking.end_time).isoformat(),
        )
    return _apply(db, booking, BookingEvent.END_ELAPSED, now)
