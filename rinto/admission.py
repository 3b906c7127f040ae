# Booking admission: validate a requested interval and atomically reserve it as a pending booking.
#
# Concurrency: the overlap check and the insert run as one unit per listing.
# - In-process/Redis listing lock (locks.listing_lock) around check -> insert -> commit
# - SELECT ... FOR UPDATE on the listing row on server databases
# - On PostgreSQL, a range exclusion constraint; its violation surfaces as SlotConflict
from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, tzinfo
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, repository
from .availability import OpenHours, ensure_covered
from .clock import as_utc, utcnow
from .errors import (
    InternalError,
    InvalidInterval,
    ListingUnavailable,
    PastStartTime,
    SlotConflict,
)
from .lifecycle import ACTIVE_STATUSES, BookingStatus
from .locks import listing_lock
from .pricing import compute_price

logger = logging.getLogger("rinto.admission")

# Payment hold (minutes) for new pending bookings; the sweeper cancels holds that run out.
HOLD_MINUTES = int(os.getenv("HOLD_MINUTES", "15"))
# ISO 4217 currency code stored with each booking and sent to the payment provider
BOOKING_CURRENCY = os.getenv("BOOKING_CURRENCY", "usd").lower()


def _validate_interval(start: datetime, end: datetime) -> None:
    if start >= end:
        raise InvalidInterval(
            "start_time must be before end_time",
            start_time=start.isoformat(),
            end_time=end.isoformat(),
        )


def admit(
    db: Session,
    listing_id: int,
    renter_id: str,
    start_time: datetime,
    end_time: datetime,
    now: Optional[datetime] = None,
    policy: Optional[OpenHours] = None,
    tz: Optional[tzinfo] = None,
    lock_timeout: Optional[float] = None,
) -> models.Booking:
    """
    Admit a booking request for [start_time, end_time) on a listing.

    Order of checks:
    1. InvalidInterval     start >= end
    2. PastStartTime       start earlier than now
    3. ListingUnavailable  listing missing or inactive
    4. OutsideAvailability interval not covered by open windows on every day it spans
    5. SlotConflict        overlaps a pending/confirmed booking of the same listing

    On success the booking is committed in 'pending' status with its price fixed.
    No retries: a SlotConflict needs a different interval from the caller.
    """
    start = as_utc(start_time)
    end = as_utc(end_time)
    _validate_interval(start, end)

    now = as_utc(now) if now is not None else utcnow()
    if start < now:
        raise PastStartTime(
            "start_time is in the past",
            start_time=start.isoformat(),
            now=now.isoformat(),
        )

    try:
        listing = repository.get_listing(db, listing_id)
        if listing is None or not listing.is_active:
            raise ListingUnavailable("Listing not found or inactive", listing_id=listing_id)
        price_per_hour_cents = listing.price_per_hour_cents
        ensure_covered(db, listing_id, start, end, policy=policy, tz=tz)
    except SQLAlchemyError as exc:
        db.rollback()
        raise InternalError("Failed to load listing availability", listing_id=listing_id) from exc

    total_price_cents = compute_price(price_per_hour_cents, start, end)

    with listing_lock(listing_id, timeout=lock_timeout):
        try:
            repository.lock_listing_row(db, listing_id)
            conflicts = repository.find_overlapping(
                db, listing_id, start, end, [s.value for s in ACTIVE_STATUSES]
            )
            if conflicts:
                conflicting = [
                    {
                        "booking_id": b.id,
                        "start_time": as_utc(b.start_time).isoformat(),
                        "end_time": as_utc(b.end_time).isoformat(),
                        "status": b.status,
                    }
                    for b in conflicts
                ]
                db.rollback()
                logger.info(
                    "booking.conflict",
                    extra={"listing_id": listing_id, "renter_id": renter_id, "conflicts": len(conflicting)},
                )
                raise SlotConflict(
                    "Requested interval overlaps an existing booking",
                    listing_id=listing_id,
                    conflicts=conflicting,
                )

            booking = repository.insert_booking(
                db,
                listing_id=listing_id,
                renter_id=renter_id,
                start_time=start,
                end_time=end,
                total_price_cents=total_price_cents,
                currency=BOOKING_CURRENCY,
                status=BookingStatus.PENDING.value,
                expires_at=now + timedelta(minutes=HOLD_MINUTES),
                created_at=now,
                updated_at=now,
                version=1,
            )
            booking_id = booking.id
            db.commit()
        except IntegrityError as exc:
            # Exclusion constraint on active bookings (PostgreSQL) caught a concurrent insert
            db.rollback()
            logger.info("booking.conflict", extra={"listing_id": listing_id, "renter_id": renter_id, "source": "constraint"})
            raise SlotConflict(
                "Requested interval overlaps an existing booking",
                listing_id=listing_id,
                conflicts=[],
            ) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("booking.admit_failed", extra={"listing_id": listing_id})
            raise InternalError("Failed to store booking", listing_id=listing_id) from exc

    try:
        db.refresh(booking)
    except SQLAlchemyError as exc:
        # Already committed; the hold expires on its own if the caller gives up
        db.rollback()
        logger.exception("booking.reload_failed", extra={"booking_id": booking_id, "listing_id": listing_id})
        raise InternalError("Booking stored but could not be reloaded", listing_id=listing_id, booking_id=booking_id) from exc

    logger.info(
        "booking.admitted",
        extra={
            "booking_id": booking_id,
            "listing_id": listing_id,
            "renter_id": renter_id,
            "total_price_cents": total_price_cents,
        },
    )
    return booking
