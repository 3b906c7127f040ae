# Review endpoints: renters review completed bookings; anyone can read a listing's reviews.
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import models, repository, schemas
from ..db import get_db
from ..errors import BookingError, ListingUnavailable
from ..reviews import create_review
from .auth import get_current_user_id

router = APIRouter()


@router.post("/reviews", response_model=schemas.ReviewRead, status_code=status.HTTP_201_CREATED)
def post_review(
    payload: schemas.ReviewCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> models.Review:
    """
    Review a completed booking as its renter.

    Errors: 404 booking_not_found, 409 review_not_allowed (not the renter, not completed,
    already reviewed), 400 invalid_review (rating outside 1..5).
    """
    try:
        return create_review(db, payload.booking_id, user_id, payload.rating, comment=payload.comment)
    except BookingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail()) from exc


@router.get("/listings/{listing_id}/reviews", response_model=List[schemas.ReviewRead])
def list_reviews(
    listing_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> List[models.Review]:
    if repository.get_listing(db, listing_id) is None:
        exc = ListingUnavailable("Listing not found", listing_id=listing_id)
        raise HTTPException(status_code=exc.status_code, detail=exc.to_detail())
    return repository.list_reviews_for_listing(db, listing_id, limit=limit, offset=offset)
