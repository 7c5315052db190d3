from datetime import datetime, timedelta, timezone

import pytest

from reservation_engine.domain.booking_rules import (
    BookingPolicy,
    HoursBeforeOpening,
    ImmediateOpening,
    SameDayOpening,
    age_group_for,
    booking_window_for,
    ensure_booking_open,
    ensure_eligible,
)
from reservation_engine.domain.exceptions import BookingNotOpenError, NotEligibleError


STARTS_AT = datetime(2026, 5, 4, 22, 0, tzinfo=timezone.utc)


# ---------------------
# BOOKING WINDOWS
# ---------------------

def test_same_day_defaults_to_eight_local():
    window = booking_window_for(
        BookingPolicy.SAME_DAY,
        open_hour=None,
        open_minute=None,
        hours_before=None,
        timezone_name="America/New_York",
    )

    assert window == SameDayOpening(hour=8, minute=0, timezone="America/New_York")
    # 22:00 UTC is 18:00 in New York (EDT); booking opens 08:00 EDT = 12:00 UTC.
    assert window.opens_at(STARTS_AT) == datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)


def test_same_day_window_rejects_morning_request():
    window = SameDayOpening(hour=8, minute=0, timezone="America/New_York")

    with pytest.raises(BookingNotOpenError) as exc_info:
        ensure_booking_open(window, STARTS_AT, datetime(2026, 5, 4, 11, 59, tzinfo=timezone.utc))

    assert exc_info.value.opens_at == window.opens_at(STARTS_AT)
    ensure_booking_open(window, STARTS_AT, datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc))


def test_hours_before_window():
    window = booking_window_for(
        BookingPolicy.HOURS_BEFORE,
        open_hour=None,
        open_minute=None,
        hours_before=48,
        timezone_name="UTC",
    )

    assert window == HoursBeforeOpening(hours=48)
    with pytest.raises(BookingNotOpenError):
        ensure_booking_open(window, STARTS_AT, STARTS_AT - timedelta(hours=49))
    ensure_booking_open(window, STARTS_AT, STARTS_AT - timedelta(hours=47))


def test_hours_before_requires_lead_time():
    with pytest.raises(ValueError):
        booking_window_for(
            BookingPolicy.HOURS_BEFORE,
            open_hour=None,
            open_minute=None,
            hours_before=None,
            timezone_name="UTC",
        )


def test_booking_closes_at_session_start():
    with pytest.raises(BookingNotOpenError):
        ensure_booking_open(ImmediateOpening(), STARTS_AT, STARTS_AT)


def test_invalid_open_time():
    with pytest.raises(ValueError):
        SameDayOpening(hour=24, minute=0, timezone="UTC")


# ---------------------
# ELIGIBILITY
# ---------------------

def test_age_group_counts_calendar_years():
    assert age_group_for(2017, STARTS_AT) == "U10"


def test_eligible_player_passes():
    ensure_eligible(
        age_groups=["U9", "U10"],
        genders=["boys"],
        birth_year=2017,
        gender="boys",
        today=STARTS_AT,
    )


def test_wrong_age_group():
    with pytest.raises(NotEligibleError):
        ensure_eligible(
            age_groups=["U12"],
            genders=["mixed"],
            birth_year=2017,
            gender="girls",
            today=STARTS_AT,
        )


def test_wrong_gender_unless_mixed():
    with pytest.raises(NotEligibleError):
        ensure_eligible(
            age_groups=["U10"],
            genders=["boys"],
            birth_year=2017,
            gender="girls",
            today=STARTS_AT,
        )

    ensure_eligible(
        age_groups=["U10"],
        genders=["mixed"],
        birth_year=2017,
        gender="girls",
        today=STARTS_AT,
    )
