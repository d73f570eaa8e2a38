from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Sequence

from .availability import TimeRange, WorkingDay
from .domain import Appointment
from .errors import InThePast, InvalidFormat, TooFarAhead, TooSoon
from .time_utils import TimeOfDay, format_time, overlaps


@dataclass(frozen=True)
class BookingSettings:
    """Per beauty page configuration, passed into every engine call."""

    timezone: str = "UTC"
    slot_interval_minutes: int = 30
    auto_confirm: bool = False
    min_booking_notice_hours: int = 0
    max_booking_days_ahead: int = 90


@dataclass(frozen=True)
class Slot:
    time: TimeOfDay
    available: bool
    reason: str | None = None

    def as_dict(self) -> dict:
        return {"time": format_time(self.time), "available": self.available, "reason": self.reason}


def last_bookable_day(today: date, settings: BookingSettings) -> date:
    return today + timedelta(days=settings.max_booking_days_ahead)


def is_too_far_ahead(day: date, today: date, settings: BookingSettings) -> bool:
    """Whole days count: every slot on the last bookable day stays open."""
    return day > last_bookable_day(today, settings)


def check_booking_window(start_at: datetime, now: datetime, settings: BookingSettings) -> None:
    if start_at < now:
        raise InThePast()
    if start_at < now + timedelta(hours=settings.min_booking_notice_hours):
        raise TooSoon(
            f"Bookings need at least {settings.min_booking_notice_hours} hours notice",
            min_notice_hours=settings.min_booking_notice_hours,
        )
    local_now = now.astimezone(start_at.tzinfo) if start_at.tzinfo else now
    if is_too_far_ahead(start_at.date(), local_now.date(), settings):
        raise TooFarAhead(
            f"Bookings open at most {settings.max_booking_days_ahead} days ahead",
            max_days_ahead=settings.max_booking_days_ahead,
        )


def effective_window(
    working_range: TimeRange, service_windows: Sequence[TimeRange | None]
) -> tuple[int, int] | None:
    """Intersect working hours with every service's own time window."""
    start, end = working_range.start.minutes, working_range.end.minutes
    for window in service_windows:
        if window is None:
            continue
        start = max(start, window.start.minutes)
        end = min(end, window.end.minutes)
        if start >= end:
            return None
    return start, end


def generate_slots(
    working_day: WorkingDay | None,
    appointments: Sequence[Appointment],
    duration_minutes: int,
    interval_minutes: int = 30,
    earliest_start: int | None = None,
    service_windows: Sequence[TimeRange | None] = (),
) -> list[Slot]:
    """Candidate start times for one day.

    ``earliest_start`` is the first bookable minute today (now plus the
    minimum notice); pass ``None`` for future days.
    """
    if working_day is None:
        return []
    if duration_minutes <= 0 or interval_minutes <= 0:
        raise InvalidFormat("duration and interval must be positive")

    window = effective_window(working_day.range, service_windows)
    if window is None:
        return []

    busy = [
        a for a in appointments if a.occupies_calendar and a.date == working_day.date
    ]
    slots = []
    last_start = window[1] - duration_minutes
    for start in range(window[0], last_start + 1, interval_minutes):
        end = start + duration_minutes
        at = TimeOfDay(start)
        if earliest_start is not None and start < earliest_start:
            slots.append(Slot(at, False, "past"))
        elif any(overlaps(start, end, b.start.minutes, b.end.minutes) for b in working_day.breaks):
            slots.append(Slot(at, False, "break"))
        elif any(overlaps(start, end, a.start.minutes, a.end.minutes) for a in busy):
            slots.append(Slot(at, False, "booked"))
        else:
            slots.append(Slot(at, True))
    return slots


def available_only(slots: Sequence[Slot]) -> list[Slot]:
    return [s for s in slots if s.available]
