# tests/unit/test_timetable.py

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from busline.domain.timetable import (
    as_utc,
    booking_expiry,
    combine,
    derive_arrival,
    intervals_overlap,
    is_valid_hhmm,
    minutes_to_time,
    time_to_minutes,
)


# ---------------------
# HH:MM PARSING
# ---------------------

@pytest.mark.parametrize(
    "value, minutes",
    [("00:00", 0), ("9:05", 545), ("12:30", 750), ("23:59", 1439)],
)
def test_time_to_minutes(value, minutes):
    assert time_to_minutes(value) == minutes


@pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "", None, "1230"])
def test_time_to_minutes_rejects_garbage(value):
    assert not is_valid_hhmm(value)
    with pytest.raises(ValueError):
        time_to_minutes(value)


def test_minutes_to_time_wraps_past_midnight():
    assert minutes_to_time(0) == "00:00"
    assert minutes_to_time(750) == "12:30"
    assert minutes_to_time(1440 + 120) == "02:00"


# ---------------------
# ARRIVAL DERIVATION
# ---------------------

def test_derive_arrival_same_day():
    assert derive_arrival(date(2031, 3, 11), "10:00", 180) == (date(2031, 3, 11), "13:00")


def test_derive_arrival_crosses_midnight():
    assert derive_arrival(date(2031, 3, 11), "23:00", 180) == (date(2031, 3, 12), "02:00")


def test_derive_arrival_spans_several_days():
    assert derive_arrival(date(2031, 3, 11), "22:00", 2 * 1440 + 60) == (date(2031, 3, 13), "23:00")


# ---------------------
# INSTANTS
# ---------------------

def test_combine_uses_service_zone():
    instant = combine(date(2031, 3, 11), "10:00")

    assert instant.tzinfo == timezone.utc
    # Asia/Ho_Chi_Minh is UTC+7.
    assert instant == datetime(2031, 3, 11, 3, 0, tzinfo=timezone.utc)


def test_combine_with_explicit_zone():
    instant = combine(date(2031, 3, 11), "10:00", tz=ZoneInfo("UTC"))
    assert instant == datetime(2031, 3, 11, 10, 0, tzinfo=timezone.utc)


def test_booking_expiry_is_three_hours_before_departure():
    departure = combine(date(2031, 3, 11), "10:00")
    assert departure - booking_expiry(departure) == timedelta(hours=3)


def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2031, 3, 11, 3, 0)
    assert as_utc(naive) == datetime(2031, 3, 11, 3, 0, tzinfo=timezone.utc)
    assert as_utc(None) is None


# ---------------------
# OVERLAP
# ---------------------

def test_overlapping_intervals():
    assert intervals_overlap(600, 780, 750, 930)


def test_touching_intervals_do_not_overlap():
    assert not intervals_overlap(600, 780, 780, 960)
    assert not intervals_overlap(780, 960, 600, 780)


def test_contained_interval_overlaps():
    assert intervals_overlap(600, 900, 660, 720)
