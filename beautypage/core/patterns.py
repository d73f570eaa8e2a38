from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Sequence

import holidays

from .availability import TimeRange, WorkingDay
from .errors import InvalidFormat
from .promotions import day_of_week


@dataclass(frozen=True)
class WorkingHours:
    range: TimeRange
    breaks: tuple[TimeRange, ...] = ()

    def for_day(self, day: date) -> WorkingDay:
        return WorkingDay(date=day, range=self.range, breaks=self.breaks)


def _days_between(start: date, end: date) -> list[date]:
    if end < start:
        raise InvalidFormat("pattern end date is before its start date")
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def _holiday_calendar(country: str | None, days: Sequence[date]):
    code = (country or "").strip().upper()
    if not code or not days:
        return None
    try:
        return holidays.country_holidays(code, years=sorted({d.year for d in days}))
    except NotImplementedError as exc:
        raise InvalidFormat(f"unknown holidays country: {country!r}") from exc


def _apply(days: Sequence[date], hours: WorkingHours, skip_holidays_for: str | None) -> list[WorkingDay]:
    calendar = _holiday_calendar(skip_holidays_for, days)
    return [hours.for_day(d) for d in days if calendar is None or d not in calendar]


def rotation(
    start: date,
    end: date,
    days_on: int,
    days_off: int,
    hours: WorkingHours,
    skip_holidays_for: str | None = None,
) -> list[WorkingDay]:
    """Work ``days_on`` days, rest ``days_off`` days, repeat from ``start``."""
    if days_on <= 0 or days_off < 0:
        raise InvalidFormat("rotation needs at least one working day per cycle")
    cycle = days_on + days_off
    picked = [d for i, d in enumerate(_days_between(start, end)) if i % cycle < days_on]
    return _apply(picked, hours, skip_holidays_for)


def weekly(
    start: date,
    end: date,
    weekdays: Iterable[int],
    hours: WorkingHours,
    skip_holidays_for: str | None = None,
) -> list[WorkingDay]:
    wanted = set(weekdays)
    if not wanted or not wanted <= set(range(7)):
        raise InvalidFormat("weekdays must be numbers 0 (Sunday) to 6 (Saturday)")
    picked = [d for d in _days_between(start, end) if day_of_week(d) in wanted]
    return _apply(picked, hours, skip_holidays_for)


def bulk(
    dates: Iterable[date], hours: WorkingHours, skip_holidays_for: str | None = None
) -> list[WorkingDay]:
    return _apply(sorted(set(dates)), hours, skip_holidays_for)


def filter_existing(generated: Iterable[WorkingDay], existing: Iterable[date]) -> list[WorkingDay]:
    taken = set(existing)
    return [wd for wd in generated if wd.date not in taken]
