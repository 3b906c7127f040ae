# Hourly pricing for bookings, in integer minor currency units (cents).
from __future__ import annotations

from datetime import datetime
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from .errors import InvalidInterval

_MICROSECONDS_PER_HOUR = Decimal(3600 * 1_000_000)
_MINIMUM_HOURS = Decimal(1)


def billable_hours(start: datetime, end: datetime) -> Decimal:
    """
    Duration of [start, end) rounded UP to the next half hour, with a floor of one hour.

    Decimal arithmetic keeps the result exact (1.5h stays 1.5h).
    """
    if end <= start:
        raise InvalidInterval("end must be after start", start=start.isoformat(), end=end.isoformat())
    delta = end - start
    micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
    hours = Decimal(micros) / _MICROSECONDS_PER_HOUR
    half_hours = (hours * 2).to_integral_value(rounding=ROUND_CEILING)
    return max(half_hours / 2, _MINIMUM_HOURS)


def compute_price(price_per_hour_cents: int, start: datetime, end: datetime) -> int:
    """
    Price a rental interval.

    price = round_half_up(price_per_hour_cents * billable_hours(start, end))

    Pure and deterministic: the stored booking price must be reproducible for disputes.
    """
    if price_per_hour_cents < 0:
        raise ValueError("price_per_hour_cents must be >= 0")
    total = Decimal(int(price_per_hour_cents)) * billable_hours(start, end)
    return int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def verify_price(booking, price_per_hour_cents: int) -> bool:
    """Recompute the price of an existing booking and compare it with the stored total."""
    return compute_price(price_per_hour_cents, booking.start_time, booking.end_time) == booking.total_price_cents
