"""Booking window and player eligibility rules.

Booking policies are explicit tagged values built once from the session
columns, rather than consulted ad hoc:

- SameDayOpening: opens at a fixed local time on the day of the session
  (08:00 unless the session overrides hour/minute).
- HoursBeforeOpening: opens N hours before the session starts.
- ImmediateOpening: open as soon as the session exists.

Every policy closes booking at the session start time.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Union
from zoneinfo import ZoneInfo

from reservation_engine.domain.exceptions import BookingNotOpenError, NotEligibleError

DEFAULT_OPEN_HOUR = 8
DEFAULT_OPEN_MINUTE = 0
MIXED_GENDER = "mixed"


class BookingPolicy(str, Enum):
    SAME_DAY = "same_day"
    HOURS_BEFORE = "hours_before"
    IMMEDIATE = "immediate"


@dataclass(frozen=True)
class SameDayOpening:
    hour: int
    minute: int
    timezone: str

    def __post_init__(self) -> None:
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError("Booking open time must be a valid time of day")

    def opens_at(self, starts_at: datetime) -> datetime:
        local_start = starts_at.astimezone(ZoneInfo(self.timezone))
        return local_start.replace(
            hour=self.hour,
            minute=self.minute,
            second=0,
            microsecond=0,
        )


@dataclass(frozen=True)
class HoursBeforeOpening:
    hours: int

    def __post_init__(self) -> None:
        if self.hours <= 0:
            raise ValueError("Booking lead time must be positive")

    def opens_at(self, starts_at: datetime) -> datetime:
        return starts_at - timedelta(hours=self.hours)


@dataclass(frozen=True)
class ImmediateOpening:
    def opens_at(self, starts_at: datetime) -> datetime | None:
        return None


BookingWindow = Union[SameDayOpening, HoursBeforeOpening, ImmediateOpening]


def booking_window_for(
    policy: BookingPolicy,
    *,
    open_hour: int | None,
    open_minute: int | None,
    hours_before: int | None,
    timezone_name: str,
) -> BookingWindow:
    if policy == BookingPolicy.SAME_DAY:
        return SameDayOpening(
            hour=DEFAULT_OPEN_HOUR if open_hour is None else open_hour,
            minute=DEFAULT_OPEN_MINUTE if open_minute is None else open_minute,
            timezone=timezone_name,
        )
    if policy == BookingPolicy.HOURS_BEFORE:
        if hours_before is None:
            raise ValueError("hours_before policy requires a lead time")
        return HoursBeforeOpening(hours=hours_before)
    if policy == BookingPolicy.IMMEDIATE:
        return ImmediateOpening()
    raise ValueError(f"Unknown booking policy: {policy}")


def ensure_booking_open(window: BookingWindow, starts_at: datetime, now: datetime) -> None:
    """
    Raises BookingNotOpenError when `now` is before the window opens
    or at/after the session start.
    """
    if now >= starts_at:
        raise BookingNotOpenError("Session has already started")

    opens_at = window.opens_at(starts_at)
    if opens_at is not None and now < opens_at:
        raise BookingNotOpenError(
            f"Booking opens at {opens_at.isoformat()}",
            opens_at=opens_at,
        )


def age_group_for(birth_year: int, today: datetime) -> str:
    """Age groups are `U{age + 1}` with age counted by calendar year."""
    return f"U{today.year - birth_year + 1}"


def ensure_eligible(
    *,
    age_groups: Iterable[str],
    genders: Iterable[str],
    birth_year: int,
    gender: str,
    today: datetime,
) -> None:
    player_age_group = age_group_for(birth_year, today)
    if player_age_group not in set(age_groups):
        raise NotEligibleError(
            f"Age group {player_age_group} is not accepted for this session"
        )

    accepted_genders = set(genders)
    if gender not in accepted_genders and MIXED_GENDER not in accepted_genders:
        raise NotEligibleError(f"Session is not open to {gender}")
