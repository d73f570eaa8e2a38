import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo

from .errors import InvalidFormat

MINUTES_PER_DAY = 24 * 60
LAST_MINUTE = MINUTES_PER_DAY - 1

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


@dataclass(frozen=True, order=True)
class TimeOfDay:
    """Minutes since midnight. Parse and format only at the boundary."""

    minutes: int

    def __post_init__(self):
        if isinstance(self.minutes, bool) or not isinstance(self.minutes, int):
            raise InvalidFormat(f"time of day must be whole minutes, got {self.minutes!r}")
        if not 0 <= self.minutes < MINUTES_PER_DAY:
            raise InvalidFormat(f"time of day out of range: {self.minutes}")

    @classmethod
    def parse(cls, raw: str) -> "TimeOfDay":
        return parse_time(raw)

    @classmethod
    def from_time(cls, value: time) -> "TimeOfDay":
        return cls(value.hour * 60 + value.minute)

    @property
    def hour(self) -> int:
        return self.minutes // 60

    @property
    def minute(self) -> int:
        return self.minutes % 60

    def plus(self, minutes: int) -> "TimeOfDay":
        return TimeOfDay(self.minutes + int(minutes))

    def to_time(self) -> time:
        return time(self.hour, self.minute)

    def __str__(self) -> str:
        return format_time(self)


def parse_time(raw: str) -> TimeOfDay:
    """Parse ``HH:MM`` or ``HH:MM:SS``; seconds are validated then dropped."""
    match = _TIME_RE.match(str(raw or "").strip())
    if not match:
        raise InvalidFormat(f"invalid time: {raw!r}")
    hours, minutes = int(match.group(1)), int(match.group(2))
    seconds = int(match.group(3) or 0)
    if hours > 23 or minutes > 59 or seconds > 59:
        raise InvalidFormat(f"invalid time: {raw!r}")
    return TimeOfDay(hours * 60 + minutes)


def as_time_of_day(value) -> TimeOfDay:
    if isinstance(value, TimeOfDay):
        return value
    if isinstance(value, time):
        return TimeOfDay.from_time(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return TimeOfDay(value)
    return parse_time(value)


def format_time(value: "TimeOfDay | int") -> str:
    total = value.minutes if isinstance(value, TimeOfDay) else int(value)
    return f"{total // 60:02d}:{total % 60:02d}"


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    # half-open: touching endpoints do not overlap
    return a_start < b_end and b_start < a_end


def duration_between(start: TimeOfDay, end: TimeOfDay) -> int:
    return end.minutes - start.minutes


def snap(minutes: float, interval: int) -> int:
    """Nearest multiple of ``interval``; halves round up."""
    if interval <= 0:
        raise InvalidFormat("snap interval must be positive")
    return int(math.floor(minutes / interval + 0.5)) * interval


def combine(day: date, at: TimeOfDay, tz: tzinfo | None = None) -> datetime:
    return datetime.combine(day, at.to_time(), tzinfo=tz)


def parse_date(raw: "str | date") -> date:
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw).strip())
    except ValueError as exc:
        raise InvalidFormat(f"invalid date: {raw!r}") from exc
