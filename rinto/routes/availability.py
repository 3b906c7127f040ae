# Availability calendar endpoints: public read of one day, owner-only window declaration.
from __future__ import annotations

from datetime import date
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import models, repository, schemas
from ..availability import add_window, day_availability, local_today
from ..db import get_db
from ..errors import BookingError, ListingUnavailable
from .auth import get_current_user_id

router = APIRouter()


def _raise_http(exc: BookingError) -> NoReturn:
    raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc


def _get_listing_or_404(db: Session, listing_id: int) -> models.Listing:
    listing = repository.get_listing(db, listing_id)
    if listing is None:
        _raise_http(ListingUnavailable("Listing not found", listing_id=listing_id))
    return listing


@router.get("/listings/{listing_id}/availability", response_model=schemas.AvailabilityDayRead)
def get_availability(
    listing_id: int,
    day: Optional[date] = Query(None, alias="date"),
    db: Session = Depends(get_db),
) -> dict:
    """
    Declared windows and effective open intervals for one day (default: today in the listing timezone).

    default_policy_applied is true when the day has no windows and the default open hours apply.
    """
    _get_listing_or_404(db, listing_id)
    return day_availability(db, listing_id, day or local_today())


@router.post(
    "/listings/{listing_id}/availability",
    response_model=schemas.AvailabilityWindowRead,
    status_code=status.HTTP_201_CREATED,
)
def create_availability(
    listing_id: int,
    payload: schemas.AvailabilityWindowCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> models.AvailabilityWindow:
    listing = _get_listing_or_404(db, listing_id)
    # Only the listing owner may edit its calendar
    if listing.owner_id != user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to edit availability for this listing")

    try:
        return add_window(
            db,
            listing_id,
            payload.date,
            payload.start_minute,
            payload.end_minute,
            is_available=payload.is_available,
        )
    except BookingError as exc:
        _raise_http(exc)
