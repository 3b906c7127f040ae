# Background sweepers for time-driven lifecycle transitions.
# Invoked from the startup thread in main.py or by an external scheduler; both sweeps are idempotent.
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models
from .clock import as_utc, utcnow
from .db import SessionLocal
from .lifecycle import BookingEvent, BookingStatus, next_status

logger = logging.getLogger("rinto.sweepers")


def _bulk_transition(db: Session, current: BookingStatus, event: BookingEvent, now: datetime, *criteria, **extra) -> int:
    """
    Apply one lifecycle transition to every row in `current` matching `criteria`.

    The status guard sits in the UPDATE itself, so concurrent sweeps never move a row twice;
    rowcount is the number of bookings this call transitioned.
    """
    target = next_status(current, event)
    values = {
        models.Booking.status: target.value,
        models.Booking.updated_at: now,
        models.Booking.version: models.Booking.version + 1,
    }
    for key, value in extra.items():
        values[getattr(models.Booking, key)] = value
    result = db.execute(
        update(models.Booking)
        .where(models.Booking.status == current.value, *criteria)
        .values(values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def _run(sweep, now: Optional[datetime], db: Optional[Session]) -> int:
    # Track whether this call created its own DB session (so we can close it)
    created_session = False
    if db is None:
        db = SessionLocal()
        created_session = True

    now = as_utc(now) if now is not None else utcnow()
    try:
        count = sweep(db, now)
        db.commit()
        return count
    except Exception:
        # Roll back partial work, then bubble up the error
        db.rollback()
        raise
    finally:
        if created_session:
            db.close()


def complete_elapsed_bookings(now: Optional[datetime] = None, db: Optional[Session] = None) -> int:
    """
    Mark confirmed bookings whose end_time has passed as completed.

    Returns the number of bookings transitioned by this call; a repeat call with the
    same `now` returns 0.
    """
    def _sweep(session: Session, at: datetime) -> int:
        count = _bulk_transition(
            session,
            BookingStatus.CONFIRMED,
            BookingEvent.END_ELAPSED,
            at,
            models.Booking.end_time <= at,
        )
        if count:
            logger.info("sweep.completed", extra={"count": count, "now": at.isoformat()})
        return count

    return _run(_sweep, now, db)


def expire_pending_holds(now: Optional[datetime] = None, db: Optional[Session] = None) -> int:
    """
    Cancel pending bookings whose payment hold (expires_at) ran out before `now`.

    This is the payment-timeout trigger of the lifecycle: the slot becomes bookable again.
    """
    def _sweep(session: Session, at: datetime) -> int:
        count = _bulk_transition(
            session,
            BookingStatus.PENDING,
            BookingEvent.PAYMENT_EXPIRED,
            at,
            models.Booking.expires_at.is_not(None),
            models.Booking.expires_at < at,
            cancel_reason="payment_timeout",
        )
        if count:
            logger.info("sweep.expired", extra={"count": count, "now": at.isoformat()})
        return count

    return _run(_sweep, now, db)


def run_sweeps(now: Optional[datetime] = None) -> Dict[str, int]:
    """Run every sweep once; used by the background worker."""
    return {
        "expired": expire_pending_holds(now),
        "completed": complete_elapsed_bookings(now),
    }
