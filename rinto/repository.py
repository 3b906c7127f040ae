# Storage boundary for the booking core.
# Thin query helpers over a Session; callers own the transaction (commit/rollback).
from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models
from .db import is_sqlite


def get_listing(db: Session, listing_id: int) -> Optional[models.Listing]:
    return db.get(models.Listing, listing_id)


def lock_listing_row(db: Session, listing_id: int) -> None:
    """
    Take a row lock on the listing for the rest of the transaction (SELECT ... FOR UPDATE).

    Serializes admissions for one listing across processes on server databases.
    SQLite has no row locks; there the in-process listing lock is the guard.
    """
    if is_sqlite(db):
        return
    db.query(models.Listing.id).filter(models.Listing.id == listing_id).with_for_update().first()


def get_availability_windows(db: Session, listing_id: int, day: date) -> List[models.AvailabilityWindow]:
    return (
        db.query(models.AvailabilityWindow)
        .filter(
            models.AvailabilityWindow.listing_id == listing_id,
            models.AvailabilityWindow.date == day,
        )
        .order_by(models.AvailabilityWindow.start_minute.asc())
        .all()
    )


def find_overlapping(
    db: Session,
    listing_id: int,
    start: datetime,
    end: datetime,
    statuses: Iterable[str],
    exclude_id: Optional[int] = None,
) -> List[models.Booking]:
    """
    Bookings of the listing in one of `statuses` that overlap [start, end).

    Half-open overlap: existing.start < end AND start < existing.end,
    so back-to-back intervals do not collide.
    """
    q = db.query(models.Booking).filter(
        models.Booking.listing_id == listing_id,
        models.Booking.status.in_([getattr(s, "value", s) for s in statuses]),
        models.Booking.start_time < end,
        models.Booking.end_time > start,
    )
    if exclude_id is not None:
        q = q.filter(models.Booking.id != exclude_id)
    return q.order_by(models.Booking.start_time.asc()).all()


def insert_booking(db: Session, **fields) -> models.Booking:
    """Add a booking and flush so it gets an id; the caller commits."""
    obj = models.Booking(**fields)
    db.add(obj)
    db.flush()
    return obj


def update_booking_status(
    db: Session,
    booking_id: int,
    expected: str,
    new_status: str,
    now: datetime,
    payment_reference: Optional[str] = None,
    cancel_reason: Optional[str] = None,
) -> bool:
    """
    Move one booking from `expected` to `new_status` with a status-guarded UPDATE.

    Returns False when the row is no longer in `expected` (another transition won).
    The caller commits.
    """
    values = {
        models.Booking.status: new_status,
        models.Booking.updated_at: now,
        models.Booking.version: models.Booking.version + 1,
    }
    if payment_reference is not None:
        values[models.Booking.payment_reference] = payment_reference
    if cancel_reason is not None:
        values[models.Booking.cancel_reason] = cancel_reason
    result = db.execute(
        update(models.Booking)
        .where(models.Booking.id == booking_id, models.Booking.status == expected)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def get_booking(db: Session, booking_id: int) -> Optional[models.Booking]:
    return db.get(models.Booking, booking_id)


def list_bookings_for_renter(db: Session, renter_id: str, limit: int = 20, offset: int = 0) -> List[models.Booking]:
    return (
        db.query(models.Booking)
        .filter(models.Booking.renter_id == renter_id)
        .order_by(models.Booking.start_time.desc(), models.Booking.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def list_bookings_for_listing(db: Session, listing_id: int, limit: int = 50, offset: int = 0) -> List[models.Booking]:
    return (
        db.query(models.Booking)
        .filter(models.Booking.listing_id == listing_id)
        .order_by(models.Booking.start_time.asc(), models.Booking.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def insert_availability_window(db: Session, **fields) -> models.AvailabilityWindow:
    """Add an availability window and flush so it gets an id; the caller commits."""
    obj = models.AvailabilityWindow(**fields)
    db.add(obj)
    db.flush()
    return obj


def list_reviews_for_listing(db: Session, listing_id: int, limit: int = 50, offset: int = 0) -> List[models.Review]:
    return (
        db.query(models.Review)
        .filter(models.Review.listing_id == listing_id)
        .order_by(models.Review.created_at.desc(), models.Review.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
