# busline/domain/timetable.py

import os
import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

MINUTES_PER_DAY = 24 * 60
BOOKING_CUTOFF = timedelta(hours=3)

_HHMM = re.compile(r"^([01]?[0-9]|2[0-3]):([0-5][0-9])$")


def service_timezone() -> ZoneInfo:
    return ZoneInfo(os.getenv("SERVICE_TIMEZONE", "Asia/Ho_Chi_Minh"))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_hhmm(value: str) -> bool:
    return bool(_HHMM.match(value or ""))


def time_to_minutes(value: str) -> int:
    match = _HHMM.match(value or "")
    if not match:
        raise ValueError(f"Expected HH:MM, got {value!r}")
    return int(match.group(1)) * 60 + int(match.group(2))


def minutes_to_time(minutes: int) -> str:
    hours = (minutes // 60) % 24
    return f"{hours:02d}:{minutes % 60:02d}"


def combine(day: date, hhmm: str, tz: ZoneInfo | None = None) -> datetime:
    """Local calendar day + HH:MM in the service zone, as an aware UTC instant."""
    minutes = time_to_minutes(hhmm)
    local = datetime.combine(
        day,
        time(hour=minutes // 60, minute=minutes % 60),
        tzinfo=tz or service_timezone(),
    )
    return local.astimezone(timezone.utc)


def derive_arrival(
    departure_date: date,
    departure_time: str,
    duration_minutes: int,
) -> tuple[date, str]:
    """
    Arrival day and time for a trip of the given length.
    Trips may roll over one or more midnights.
    """
    end = time_to_minutes(departure_time) + duration_minutes
    return departure_date + timedelta(days=end // MINUTES_PER_DAY), minutes_to_time(end)


def booking_expiry(departure_at: datetime) -> datetime:
    return departure_at - BOOKING_CUTOFF


def intervals_overlap(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    # Half-open: touching endpoints do not overlap.
    return start_a < end_b and start_b < end_a


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
