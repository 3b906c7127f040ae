# Pytest configuration for the booking API tests.
# Forces a local SQLite DB, disables Redis and the background sweeper, and wires a JWT secret.
import os
from datetime import date
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient

# Test-time environment: local SQLite DB, Redis disabled, no sweeper thread, predictable JWT secret
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("RINTO_JWT_SECRET", "test-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "")
os.environ.setdefault("DEFAULT_OPEN_HOURS", "08:00-18:00")
os.environ.setdefault("LISTING_TIMEZONE", "UTC")

import sys
# Ensure the repo root is on sys.path so 'rinto' resolves when running pytest without installing
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from rinto.main import app  # noqa: E402
from rinto.db import Base, SessionLocal, engine  # noqa: E402
from rinto import models  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_db() -> Iterator[None]:
    """
    Session-level database bootstrap using a local SQLite file.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_db() -> Iterator[None]:
    """
    Function-level isolation: drop and recreate schema before each test.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """
    FastAPI TestClient bound to the application for HTTP-level tests.
    """
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def db() -> Iterator:
    """A session for service-level tests; closed after the test."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_listing() -> Callable[..., int]:
    """Insert a listing (normally owned by the listings service) and return its id."""
    def _make(price_per_hour_cents: int = 3000, owner_id: str = "owner-1", is_active: bool = True, title: str = "Sea Ray 190") -> int:
        session = SessionLocal()
        try:
            obj = models.Listing(
                owner_id=owner_id,
                title=title,
                price_per_hour_cents=price_per_hour_cents,
                is_active=is_active,
            )
            session.add(obj)
            session.commit()
            return obj.id
        finally:
            session.close()

    return _make


@pytest.fixture()
def add_window() -> Callable[..., None]:
    """Declare an availability window for a listing on one day (minutes from midnight)."""
    def _add(listing_id: int, day: date, start_minute: int, end_minute: int, is_available: bool = True) -> None:
        session = SessionLocal()
        try:
            session.add(
                models.AvailabilityWindow(
                    listing_id=listing_id,
                    date=day,
                    start_minute=start_minute,
                    end_minute=end_minute,
                    is_available=is_available,
                )
            )
            session.commit()
        finally:
            session.close()

    return _add

