# Pydantic models (request/response DTOs) used by the API layer.
# Keep models minimal and serializable; business rules live in admission/lifecycle.
from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .clock import as_utc

BookingStatusLiteral = Literal["pending", "confirmed", "completed", "cancelled"]


# Request payload for creating a booking
class BookingCreate(BaseModel):
    listing_id: int = Field(..., ge=1)
    renter_id: str = Field(..., min_length=1, max_length=255)
    start_time: datetime
    end_time: datetime

    @field_validator("renter_id", mode="before")
    @classmethod
    def strip_renter_id(cls, v: str) -> str:
        # Trim surrounding whitespace before validation
        if isinstance(v, str):
            v = v.strip()
        return v


# API response for a booking record
class BookingRead(BaseModel):
    id: int
    listing_id: int
    renter_id: str
    start_time: datetime
    end_time: datetime
    total_price_cents: int
    currency: str = "usd"
    status: BookingStatusLiteral
    payment_reference: Optional[str] = None
    expires_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    # SQLite returns naive datetimes; stored values are UTC
    @field_validator("start_time", "end_time", "expires_at", "created_at", "updated_at", mode="after")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


# Next step after admission: pay before the hold expires
class NextActionPay(BaseModel):
    type: Literal["pay"]
    expires_at: datetime
    client_secret: str


# Returned after creating a booking; includes the record and the next client action
class BookingCreateResponse(BaseModel):
    booking: BookingRead
    next_action: NextActionPay


# Payment intent details for the client-side payment widget
class PaymentInfoResponse(BaseModel):
    booking_id: int
    client_secret: str
    amount_cents: int
    currency: str
    expires_at: datetime


# Request payload for declaring an availability window (minutes from local midnight)
class AvailabilityWindowCreate(BaseModel):
    date: date
    start_minute: int = Field(..., ge=0, lt=1440)
    end_minute: int = Field(..., gt=0, le=1440)
    is_available: bool = True

    @model_validator(mode="after")
    def check_order(self) -> "AvailabilityWindowCreate":
        if self.start_minute >= self.end_minute:
            raise ValueError("start_minute must be before end_minute")
        return self


class AvailabilityWindowRead(BaseModel):
    id: int
    listing_id: int
    date: date
    start_minute: int
    end_minute: int
    is_available: bool

    model_config = ConfigDict(from_attributes=True)


class OpenInterval(BaseModel):
    start_minute: float
    end_minute: float


# One calendar day as admission sees it
class AvailabilityDayRead(BaseModel):
    listing_id: int
    date: date
    windows: List[AvailabilityWindowRead]
    open_intervals: List[OpenInterval]
    default_policy_applied: bool


# Request payload for reviewing a completed booking; the rating range is checked by the reviews module
class ReviewCreate(BaseModel):
    booking_id: int = Field(..., ge=1)
    rating: int
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewRead(BaseModel):
    id: int
    listing_id: int
    booking_id: int
    user_id: str
    rating: int
    comment: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", mode="after")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        return as_utc(v)
