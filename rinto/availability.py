# Availability model: per-listing, per-day open intervals declared by the owner.
# Days without any declared window fall back to a configurable default open policy.
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, repository
from .clock import as_utc, utcnow
from .errors import InternalError, InvalidInterval, OutsideAvailability

logger = logging.getLogger("rinto.availability")

MINUTES_PER_DAY = 1440

Interval = Tuple[float, float]


@dataclass(frozen=True)
class OpenHours:
    """Default open intervals applied to a day that has no availability windows."""
    intervals: Tuple[Tuple[int, int], ...]

    @property
    def is_closed(self) -> bool:
        return not self.intervals


@dataclass(frozen=True)
class DaySegment:
    """Part of a requested interval that falls on one local calendar day."""
    day: date
    start_minute: float
    end_minute: float


def _parse_clock(value: str) -> int:
    hours, _, minutes = value.strip().partition(":")
    total = int(hours) * 60 + int(minutes or 0)
    if not 0 <= total <= MINUTES_PER_DAY:
        raise ValueError(f"time of day out of range: {value!r}")
    return total


def parse_open_hours(value: Optional[str]) -> OpenHours:
    """
    Parse a policy string such as "08:00-18:00" or "06:00-12:00,14:00-20:00".

    "closed" (or an empty value) means days without windows are not bookable.
    """
    if value is None or not value.strip() or value.strip().lower() == "closed":
        return OpenHours(intervals=())
    intervals = []
    for chunk in value.split(","):
        if not chunk.strip():
            continue
        start_s, sep, end_s = chunk.partition("-")
        if not sep:
            raise ValueError(f"invalid open hours interval: {chunk!r}")
        start, end = _parse_clock(start_s), _parse_clock(end_s)
        if start >= end:
            raise ValueError(f"open hours interval must start before it ends: {chunk!r}")
        intervals.append((start, end))
    return OpenHours(intervals=tuple(sorted(intervals)))


# Policy for days with no declared windows; set DEFAULT_OPEN_HOURS=closed to require explicit windows.
DEFAULT_OPEN_HOURS = parse_open_hours(os.getenv("DEFAULT_OPEN_HOURS", "08:00-18:00"))

# Timezone in which calendar days and minutes-from-midnight are evaluated.
LISTING_TIMEZONE = ZoneInfo(os.getenv("LISTING_TIMEZONE", "UTC"))


def split_by_day(start: datetime, end: datetime, tz: Optional[tzinfo] = None) -> List[DaySegment]:
    """
    Split [start, end) into per-day segments expressed in minutes from local midnight.

    A segment running up to the next midnight ends at minute 1440.
    """
    tz = tz or LISTING_TIMEZONE
    start_local = as_utc(start).astimezone(tz)
    end_local = as_utc(end).astimezone(tz)
    if start_local >= end_local:
        raise InvalidInterval("start must be before end", start=start.isoformat(), end=end.isoformat())

    segments: List[DaySegment] = []
    day = start_local.date()
    while True:
        midnight = datetime.combine(day, time(0), tzinfo=tz)
        next_midnight = datetime.combine(day + timedelta(days=1), time(0), tzinfo=tz)
        if midnight >= end_local:
            break
        seg_start = max(start_local, midnight)
        if end_local >= next_midnight:
            end_minute = float(MINUTES_PER_DAY)
        else:
            end_minute = (end_local - midnight).total_seconds() / 60
        start_minute = (seg_start - midnight).total_seconds() / 60
        if end_minute > start_minute:
            segments.append(DaySegment(day=day, start_minute=start_minute, end_minute=end_minute))
        day += timedelta(days=1)
    return segments


def effective_intervals(windows: Sequence, policy: Optional[OpenHours] = None) -> List[Interval]:
    """
    Open intervals for one day.

    No windows at all -> the default policy. Otherwise only is_available windows count;
    closed windows never contribute coverage.
    """
    if not windows:
        policy = policy if policy is not None else DEFAULT_OPEN_HOURS
        return [(float(s), float(e)) for s, e in policy.intervals]
    return [(float(w.start_minute), float(w.end_minute)) for w in windows if w.is_available]


def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    merged: List[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def is_covered(intervals: Iterable[Interval], start_minute: float, end_minute: float) -> bool:
    """True when the union of intervals covers [start_minute, end_minute) completely."""
    for start, end in merge_intervals(intervals):
        if start <= start_minute and end_minute <= end:
            return True
    return False


def ensure_covered(
    db: Session,
    listing_id: int,
    start: datetime,
    end: datetime,
    policy: Optional[OpenHours] = None,
    tz: Optional[tzinfo] = None,
) -> None:
    """
    Raise OutsideAvailability unless every day segment of [start, end) is covered.

    Each calendar day spanned by the request is checked independently.
    """
    for segment in split_by_day(start, end, tz):
        windows = repository.get_availability_windows(db, listing_id, segment.day)
        intervals = effective_intervals(windows, policy)
        if not is_covered(intervals, segment.start_minute, segment.end_minute):
            raise OutsideAvailability(
                "Requested interval is not fully covered by available windows",
                date=segment.day.isoformat(),
                start_minute=segment.start_minute,
                end_minute=segment.end_minute,
                windows=[{"start_minute": s, "end_minute": e} for s, e in merge_intervals(intervals)],
                default_policy_applied=not windows,
            )


def local_today(tz: Optional[tzinfo] = None) -> date:
    return utcnow().astimezone(tz or LISTING_TIMEZONE).date()


def day_availability(db: Session, listing_id: int, day: date, policy: Optional[OpenHours] = None) -> dict:
    """
    Calendar view of one day: the declared windows and the merged open intervals admission will use.
    """
    windows = repository.get_availability_windows(db, listing_id, day)
    return {
        "listing_id": listing_id,
        "date": day,
        "windows": windows,
        "open_intervals": [
            {"start_minute": s, "end_minute": e} for s, e in merge_intervals(effective_intervals(windows, policy))
        ],
        "default_policy_applied": not windows,
    }


def add_window(
    db: Session,
    listing_id: int,
    day: date,
    start_minute: int,
    end_minute: int,
    is_available: bool = True,
) -> models.AvailabilityWindow:
    """Declare an open (or closed) window for a listing on one day and commit it."""
    if not 0 <= start_minute < end_minute <= MINUTES_PER_DAY:
        raise InvalidInterval(
            "window must satisfy 0 <= start_minute < end_minute <= 1440",
            start_minute=start_minute,
            end_minute=end_minute,
        )
    try:
        window = repository.insert_availability_window(
            db,
            listing_id=listing_id,
            date=day,
            start_minute=start_minute,
            end_minute=end_minute,
            is_available=is_available,
        )
        db.commit()
        db.refresh(window)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("availability.add_failed", extra={"listing_id": listing_id})
        raise InternalError("Failed to store availability window", listing_id=listing_id) from exc

    logger.info(
        "availability.window_added",
        extra={"listing_id": listing_id, "date": day.isoformat(), "window_id": window.id},
    )
    return window
