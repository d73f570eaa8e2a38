from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from .errors import (
    BookingRuleError,
    ConflictsWithBreak,
    InvalidFormat,
    NotAWorkingDay,
    OutsideWorkingHours,
)
from .time_utils import TimeOfDay, as_time_of_day, overlaps


@dataclass(frozen=True)
class TimeRange:
    start: TimeOfDay
    end: TimeOfDay

    def __post_init__(self):
        if not self.start < self.end:
            raise InvalidFormat(f"time range must start before it ends: {self.start}-{self.end}")

    @classmethod
    def of(cls, start, end) -> "TimeRange":
        return cls(as_time_of_day(start), as_time_of_day(end))

    @property
    def minutes(self) -> int:
        return self.end.minutes - self.start.minutes

    def contains(self, other: "TimeRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: "TimeRange") -> bool:
        return overlaps(self.start, self.end, other.start, other.end)

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


@dataclass(frozen=True)
class WorkingDay:
    date: date
    range: TimeRange
    breaks: tuple[TimeRange, ...] = field(default_factory=tuple)

    def __post_init__(self):
        ordered = tuple(sorted(self.breaks, key=lambda b: b.start))
        for brk in ordered:
            if not self.range.contains(brk):
                raise InvalidFormat(f"break {brk} is outside working hours {self.range}")
        for prev, nxt in zip(ordered, ordered[1:]):
            if prev.overlaps(nxt):
                raise InvalidFormat(f"breaks {prev} and {nxt} overlap")
        object.__setattr__(self, "breaks", ordered)


@dataclass(frozen=True)
class Check:
    ok: bool
    reason: BookingRuleError | None = None


ACCEPTED = Check(ok=True)


def find_working_day(day: date, working_days: Iterable[WorkingDay]) -> WorkingDay | None:
    for working_day in working_days:
        if working_day.date == day:
            return working_day
    return None


def is_within_working_hours(
    day: date,
    start: TimeOfDay,
    end: TimeOfDay,
    working_days: Iterable[WorkingDay],
) -> Check:
    working_day = find_working_day(day, working_days)
    if working_day is None:
        return Check(ok=False, reason=NotAWorkingDay())

    if start < working_day.range.start or end > working_day.range.end:
        return Check(ok=False, reason=OutsideWorkingHours())

    for brk in working_day.breaks:
        if overlaps(start, end, brk.start, brk.end):
            return Check(ok=False, reason=ConflictsWithBreak())

    return ACCEPTED
