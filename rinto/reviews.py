# Review aggregation: renters review completed bookings; listings keep a running mean and count.
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, repository
from .errors import BookingNotFound, InternalError, InvalidReview, ReviewNotAllowed
from .lifecycle import BookingStatus

logger = logging.getLogger("rinto.reviews")


def _refresh_listing_rating(db: Session, listing_id: int) -> None:
    count, average = (
        db.query(func.count(models.Review.id), func.avg(models.Review.rating))
        .filter(models.Review.listing_id == listing_id)
        .one()
    )
    listing = repository.get_listing(db, listing_id)
    listing.review_count = int(count or 0)
    listing.rating = float(average) if average is not None else None
    db.add(listing)


def create_review(
    db: Session,
    booking_id: int,
    user_id: str,
    rating: int,
    comment: Optional[str] = None,
) -> models.Review:
    """
    Record the renter's review of a completed booking and recompute the listing rating.

    One review per booking; the unique constraint on booking_id also covers concurrent submissions.
    """
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise InvalidReview("rating must be an integer between 1 and 5", rating=rating)

    booking = repository.get_booking(db, booking_id)
    if booking is None:
        raise BookingNotFound(f"Booking {booking_id} not found", booking_id=booking_id)
    if booking.renter_id != user_id:
        raise ReviewNotAllowed("Only the renter can review this booking", booking_id=booking_id)
    if booking.status != BookingStatus.COMPLETED.value:
        raise ReviewNotAllowed(
            "Only completed bookings can be reviewed",
            booking_id=booking_id,
            status=booking.status,
        )

    listing_id = booking.listing_id
    review = models.Review(
        listing_id=listing_id,
        booking_id=booking_id,
        user_id=user_id,
        rating=rating,
        comment=comment.strip() if comment else None,
    )
    try:
        db.add(review)
        db.flush()
        _refresh_listing_rating(db, listing_id)
        db.commit()
        db.refresh(review)
    except IntegrityError as exc:
        db.rollback()
        raise ReviewNotAllowed("This booking has already been reviewed", booking_id=booking_id) from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise InternalError("Failed to store review", booking_id=booking_id) from exc

    logger.info(
        "review.created",
        extra={"review_id": review.id, "booking_id": booking_id, "listing_id": listing_id, "rating": rating},
    )
    return review
