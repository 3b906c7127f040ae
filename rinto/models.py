# SQLAlchemy ORM models for the booking core (listings, availability windows, bookings, reviews).
# Keep business logic out of models; admission and lifecycle rules live in their own modules.
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import declarative_mixin

from .db import Base


@declarative_mixin
class TimestampMixin:
    """Common UTC-aware timestamps.

    - created_at: set on insert
    - updated_at: set on insert; lifecycle transitions write it explicitly
    """
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Listing(Base, TimestampMixin):
    """Watercraft offered for hourly rental. Owned and edited by an external listings service."""
    __tablename__ = "listings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    owner_id = Column(String(255), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    price_per_hour_cents = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    # Review aggregate, recomputed whenever a review is created
    rating = Column(Float, nullable=True)
    review_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("price_per_hour_cents >= 0", name="ck_listings_price_non_negative"),
    )


class AvailabilityWindow(Base):
    """Owner-declared open (or closed) interval on one calendar day, in minutes from local midnight."""
    __tablename__ = "availability_windows"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    date = Column(Date, nullable=False)
    start_minute = Column(Integer, nullable=False)
    end_minute = Column(Integer, nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("start_minute >= 0 AND start_minute < 1440", name="ck_availability_start_minute"),
        CheckConstraint("end_minute > 0 AND end_minute <= 1440", name="ck_availability_end_minute"),
        CheckConstraint("start_minute < end_minute", name="ck_availability_window_order"),
        Index("ix_availability_listing_date", "listing_id", "date"),
    )


class Booking(Base, TimestampMixin):
    """Reserved, priced interval for a listing.

    Status transitions (see lifecycle.next_status):
    pending -> confirmed -> completed
       └── cancelled

    total_price_cents is written once at admission and never recomputed.
    'version' is bumped on every transition and backs the status-guarded updates.
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False, index=True)
    renter_id = Column(String(255), nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    total_price_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, default="pending")
    payment_intent_id = Column(String(255), nullable=True, index=True)
    payment_reference = Column(String(255), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(String(255), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    # Overlap checks scan (listing, status, start/end); sweeps scan (status, end_time) and (status, expires_at)
    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_bookings_interval_order"),
        CheckConstraint("total_price_cents >= 0", name="ck_bookings_price_non_negative"),
        Index("ix_bookings_listing_status_start", "listing_id", "status", "start_time"),
        Index("ix_bookings_status_end", "status", "end_time"),
        Index("ix_bookings_status_expires_at", "status", "expires_at"),
    )


class Review(Base):
    """Renter review of a completed booking; at most one per booking."""
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, unique=True)
    user_id = Column(String(255), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
    )
