# Booking endpoints: admit, read, list and cancel bookings.
# Handlers stay thin: validate the caller, delegate to admission/lifecycle, map domain errors to HTTP.
from __future__ import annotations

import logging
from typing import List, NoReturn

import stripe
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import models, repository, schemas
from ..admission import admit
from ..clock import as_utc
from ..db import get_db
from ..errors import BookingError, BookingNotFound, ListingUnavailable
from ..lifecycle import PaymentOutcome, cancel_booking as cancel_pending_booking, on_payment_outcome
from ..payments import ensure_payment_intent
from .auth import get_current_user_id

router = APIRouter()
logger = logging.getLogger("rinto.bookings")


def _raise_http(exc: BookingError) -> NoReturn:
    # Machine-readable body: {"detail": {"error": <code>, "message": ..., ...context}}
    raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc


def _get_booking_or_404(db: Session, booking_id: int) -> models.Booking:
    booking = repository.get_booking(db, booking_id)
    if not booking:
        _raise_http(BookingNotFound("Booking not found", booking_id=booking_id))
    return booking


def _is_listing_owner(db: Session, listing_id: int, user_id: str) -> bool:
    listing = repository.get_listing(db, listing_id)
    return listing is not None and listing.owner_id == user_id


@router.post(
    "/bookings",
    response_model=schemas.BookingCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_booking(
    payload: schemas.BookingCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> schemas.BookingCreateResponse:
    """
    Admit a booking and start payment.

    Success: 201 with the pending booking and a "pay" next_action carrying the client_secret.
    Failures map 1:1 to domain errors (detail.error = invalid_interval, past_start_time,
    listing_unavailable, outside_availability, slot_conflict, internal_error).
    """
    if payload.renter_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot book on behalf of another user")

    try:
        booking = admit(db, payload.listing_id, payload.renter_id, payload.start_time, payload.end_time)
    except BookingError as exc:
        _raise_http(exc)

    try:
        client_secret = ensure_payment_intent(db, booking)
    except (stripe.StripeError, RuntimeError) as exc:
        # Without a payment intent the hold can never be paid; release the slot right away
        logger.exception("booking.payment_intent_failed", extra={"booking_id": booking.id})
        db.rollback()
        try:
            on_payment_outcome(db, booking.id, PaymentOutcome.FAILED)
        except BookingError as cancel_exc:
            _raise_http(cancel_exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "payment_unavailable", "message": "Payment provider unavailable", "booking_id": booking.id},
        ) from exc

    return schemas.BookingCreateResponse(
        booking=schemas.BookingRead.model_validate(booking),
        next_action=schemas.NextActionPay(
            type="pay",
            expires_at=as_utc(booking.expires_at),
            client_secret=client_secret,
        ),
    )


@router.get("/bookings/me", response_model=List[schemas.BookingRead])
def list_my_bookings(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> List[models.Booking]:
    return repository.list_bookings_for_renter(db, user_id, limit=limit, offset=offset)


@router.get("/bookings/{booking_id}", response_model=schemas.BookingRead)
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> models.Booking:
    booking = _get_booking_or_404(db, booking_id)
    # Renter or the listing owner may view
    if booking.renter_id != user_id and not _is_listing_owner(db, booking.listing_id, user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to view this booking")
    return booking


@router.get("/listings/{listing_id}/bookings", response_model=List[schemas.BookingRead])
def list_listing_bookings(
    listing_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> List[models.Booking]:
    listing = repository.get_listing(db, listing_id)
    if listing is None:
        _raise_http(ListingUnavailable("Listing not found", listing_id=listing_id))
    if listing.owner_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to view bookings for this listing")
    return repository.list_bookings_for_listing(db, listing_id, limit=limit, offset=offset)


@router.delete("/bookings/{booking_id}", response_model=schemas.BookingRead)
def cancel_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> models.Booking:
    """
    Cancel a pending booking.

    Authorization: the renter, or the owner of the booked listing.
    Confirmed/completed/cancelled bookings answer 409 invalid_transition.
    """
    booking = _get_booking_or_404(db, booking_id)
    if booking.renter_id == user_id:
        reason = "cancelled_by_renter"
    elif _is_listing_owner(db, booking.listing_id, user_id):
        reason = "cancelled_by_owner"
    else:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to cancel this booking")

    try:
        return cancel_pending_booking(db, booking_id, reason=reason)
    except BookingError as exc:
        _raise_http(exc)
