# Reviews: only the renter of a completed booking may review, once; the listing keeps mean and count.
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from rinto import models
from rinto.db import SessionLocal
from rinto.errors import BookingNotFound, InvalidReview, ReviewNotAllowed
from rinto.reviews import create_review
from rinto.routes.auth import create_access_token

UTC = timezone.utc
START = datetime(2024, 6, 1, 9, tzinfo=UTC)


def seed_booking(listing_id: int, status: str = "completed", renter_id: str = "renter-1", offset_hours: int = 0) -> int:
    start = START + timedelta(hours=offset_hours)
    with SessionLocal() as s:
        obj = models.Booking(
            listing_id=listing_id,
            renter_id=renter_id,
            start_time=start,
            end_time=start + timedelta(hours=1),
            total_price_cents=3000,
            status=status,
        )
        s.add(obj)
        s.commit()
        return obj.id


def listing_rating(listing_id: int) -> tuple:
    with SessionLocal() as s:
        listing = s.get(models.Listing, listing_id)
        return listing.rating, listing.review_count


def test_review_updates_listing_aggregate(db, make_listing):
    listing_id = make_listing()
    first = seed_booking(listing_id, renter_id="renter-1")
    second = seed_booking(listing_id, renter_id="renter-2", offset_hours=2)

    review = create_review(db, first, "renter-1", 5, comment="  Great boat  ")
    assert review.comment == "Great boat"
    assert listing_rating(listing_id) == (5.0, 1)

    create_review(db, second, "renter-2", 4)
    assert listing_rating(listing_id) == (4.5, 2)


def test_only_one_review_per_booking(db, make_listing):
    listing_id = make_listing()
    booking_id = seed_booking(listing_id)
    create_review(db, booking_id, "renter-1", 3)
    with pytest.raises(ReviewNotAllowed):
        create_review(db, booking_id, "renter-1", 5)
    assert listing_rating(listing_id) == (3.0, 1)


@pytest.mark.parametrize("status", ["pending", "confirmed", "cancelled"])
def test_only_completed_bookings_can_be_reviewed(db, make_listing, status):
    booking_id = seed_booking(make_listing(), status=status)
    with pytest.raises(ReviewNotAllowed) as exc:
        create_review(db, booking_id, "renter-1", 4)
    assert exc.value.detail["status"] == status


def test_only_the_renter_can_review(db, make_listing):
    booking_id = seed_booking(make_listing())
    with pytest.raises(ReviewNotAllowed):
        create_review(db, booking_id, "someone-else", 4)


@pytest.mark.parametrize("rating", [0, 6, 4.5, True, "5"])
def test_rating_must_be_integer_between_one_and_five(db, make_listing, rating):
    booking_id = seed_booking(make_listing())
    with pytest.raises(InvalidReview):
        create_review(db, booking_id, "renter-1", rating)


def test_unknown_booking(db):
    with pytest.raises(BookingNotFound):
        create_review(db, 123, "renter-1", 4)


# HTTP surface

def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def post_review(client: TestClient, booking_id: int, rating, user_id: str = "renter-1", comment: str | None = None):
    return client.post(
        "/api/v1/reviews",
        headers=auth_headers(user_id),
        json={"booking_id": booking_id, "rating": rating, "comment": comment},
    )


def test_review_api_creates_and_lists(client: TestClient, make_listing):
    listing_id = make_listing()
    booking_id = seed_booking(listing_id)

    r = post_review(client, booking_id, 4, comment="Smooth ride")
    assert r.status_code == 201, r.text
    assert r.json()["rating"] == 4
    assert r.json()["user_id"] == "renter-1"

    r = client.get(f"/api/v1/listings/{listing_id}/reviews")
    assert r.status_code == 200
    assert [rv["booking_id"] for rv in r.json()] == [booking_id]
    assert listing_rating(listing_id) == (4.0, 1)


def test_review_api_error_mapping(client: TestClient, make_listing):
    listing_id = make_listing()
    completed = seed_booking(listing_id)
    pending = seed_booking(listing_id, status="pending", offset_hours=2)

    r = post_review(client, completed, 9)
    assert r.status_code == 400 and r.json()["detail"]["error"] == "invalid_review"

    r = post_review(client, completed, 5, user_id="someone-else")
    assert r.status_code == 409 and r.json()["detail"]["error"] == "review_not_allowed"

    r = post_review(client, pending, 5)
    assert r.status_code == 409 and r.json()["detail"]["error"] == "review_not_allowed"

    r = post_review(client, 999, 5)
    assert r.status_code == 404 and r.json()["detail"]["error"] == "booking_not_found"

    assert post_review(client, completed, 5).status_code == 201
    r = post_review(client, completed, 3)
    assert r.status_code == 409 and r.json()["detail"]["error"] == "review_not_allowed"

    assert client.post("/api/v1/reviews", json={"booking_id": completed, "rating": 5}).status_code == 401
    assert client.get("/api/v1/listings/999/reviews").status_code == 404
