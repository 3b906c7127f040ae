# Availability calendar API: public day view, owner-only window creation, and its effect on admission.
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from rinto.routes.auth import create_access_token

OWNER = "owner-1"


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def future_day(days_ahead: int = 3) -> str:
    return (datetime.now(timezone.utc).date() + timedelta(days=days_ahead)).isoformat()


def add_window(client: TestClient, listing_id: int, day: str, start_minute: int, end_minute: int, user_id: str = OWNER, **extra):
    return client.post(
        f"/api/v1/listings/{listing_id}/availability",
        headers=auth_headers(user_id),
        json={"date": day, "start_minute": start_minute, "end_minute": end_minute, **extra},
    )


def test_day_without_windows_reports_default_policy(client: TestClient, make_listing):
    listing_id = make_listing(owner_id=OWNER)
    r = client.get(f"/api/v1/listings/{listing_id}/availability", params={"date": "2024-06-01"})
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["date"] == "2024-06-01"
    assert data["windows"] == []
    assert data["open_intervals"] == [{"start_minute": 480.0, "end_minute": 1080.0}]
    assert data["default_policy_applied"] is True


def test_owner_declares_windows(client: TestClient, make_listing):
    listing_id = make_listing(owner_id=OWNER)
    r = add_window(client, listing_id, "2024-06-01", 360, 600)
    assert r.status_code == 201, r.text
    assert r.json()["listing_id"] == listing_id
    assert r.json()["is_available"] is True
    assert add_window(client, listing_id, "2024-06-01", 600, 720).status_code == 201
    assert add_window(client, listing_id, "2024-06-01", 900, 960, is_available=False).status_code == 201

    data = client.get(f"/api/v1/listings/{listing_id}/availability", params={"date": "2024-06-01"}).json()
    assert len(data["windows"]) == 3
    assert data["open_intervals"] == [{"start_minute": 360.0, "end_minute": 720.0}]
    assert data["default_policy_applied"] is False


def test_only_owner_can_declare_windows(client: TestClient, make_listing):
    listing_id = make_listing(owner_id=OWNER)
    assert add_window(client, listing_id, "2024-06-01", 360, 600, user_id="renter-1").status_code == 403
    r = client.post(
        f"/api/v1/listings/{listing_id}/availability",
        json={"date": "2024-06-01", "start_minute": 360, "end_minute": 600},
    )
    assert r.status_code == 401


def test_window_validation(client: TestClient, make_listing):
    listing_id = make_listing(owner_id=OWNER)
    assert add_window(client, listing_id, "2024-06-01", 600, 600).status_code == 422
    assert add_window(client, listing_id, "2024-06-01", 0, 1500).status_code == 422


def test_unknown_listing(client: TestClient):
    r = client.get("/api/v1/listings/999/availability")
    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "listing_unavailable"
    assert add_window(client, 999, "2024-06-01", 360, 600).status_code == 404


def test_declared_windows_drive_admission(client: TestClient, make_listing):
    listing_id = make_listing(owner_id=OWNER)
    day = future_day()
    # An early-morning window replaces the 08:00-18:00 default for that day
    assert add_window(client, listing_id, day, 5 * 60, 8 * 60).status_code == 201

    def book(hour: int):
        start = datetime.fromisoformat(day).replace(hour=hour, tzinfo=timezone.utc)
        return client.post(
            "/api/v1/bookings",
            headers=auth_headers("renter-1"),
            json={
                "listing_id": listing_id,
                "renter_id": "renter-1",
                "start_time": start.isoformat(),
                "end_time": (start + timedelta(hours=1)).isoformat(),
            },
        )

    assert book(6).status_code == 201
    r = book(9)
    assert r.status_code == 422
    assert r.json()["detail"]["error"] == "outside_availability"
