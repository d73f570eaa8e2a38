"""Pointer geometry to calendar times for the schedule grid.

Absolute positioning is used to pick a slot, rail (delta) positioning for
dragging an existing appointment so rounding never accumulates drift.
Results are previews only; ``commit_proposal`` re-validates before anything
becomes authoritative.
"""

import math
from dataclasses import dataclass
from datetime import date
from typing import Sequence

from .availability import WorkingDay
from .domain import Appointment
from .errors import BelowMinimumDuration, InvalidFormat
from .placement import PlacementResult, validate_placement
from .time_utils import LAST_MINUTE, MINUTES_PER_DAY, TimeOfDay, snap

DEFAULT_SNAP_INTERVAL = 15
DEFAULT_MIN_DURATION = 15


@dataclass(frozen=True)
class GridConfig:
    start_hour: int
    end_hour: int

    def __post_init__(self):
        if not 0 <= self.start_hour < self.end_hour <= 24:
            raise InvalidFormat(f"invalid grid hours: {self.start_hour}-{self.end_hour}")

    @property
    def min_minutes(self) -> int:
        return self.start_hour * 60

    @property
    def max_minutes(self) -> int:
        # 24:00 is not a representable time of day
        return min(self.end_hour * 60, LAST_MINUTE)

    @property
    def total_minutes(self) -> int:
        return (self.end_hour - self.start_hour) * 60

    def clamp(self, minutes: int) -> TimeOfDay:
        return TimeOfDay(max(self.min_minutes, min(minutes, self.max_minutes)))


def time_from_position(
    y: float,
    grid_top: float,
    grid_height: float,
    grid: GridConfig,
    interval: int = DEFAULT_SNAP_INTERVAL,
) -> TimeOfDay:
    if grid_height <= 0:
        raise InvalidFormat("grid height must be positive")
    relative_y = max(0.0, min(y - grid_top, grid_height))
    raw_minutes = grid.min_minutes + (relative_y / grid_height) * grid.total_minutes
    return grid.clamp(snap(raw_minutes, interval))


def time_from_delta(
    delta_y: float,
    grid_height: float,
    original_start: TimeOfDay,
    grid: GridConfig,
    interval: int = DEFAULT_SNAP_INTERVAL,
) -> TimeOfDay:
    if grid_height <= 0:
        raise InvalidFormat("grid height must be positive")
    delta_minutes = (delta_y / grid_height) * grid.total_minutes
    return grid.clamp(snap(original_start.minutes + delta_minutes, interval))


def day_index_from_x(x: float, grid_left: float, grid_width: float, day_count: int) -> int:
    if day_count <= 0 or grid_width <= 0:
        raise InvalidFormat("grid must have a positive width and at least one day")
    relative_x = max(0.0, min(x - grid_left, grid_width))
    day_width = grid_width / day_count
    index = math.floor(relative_x / day_width)
    return max(0, min(index, day_count - 1))


def date_from_index(dates: Sequence[date], index: int) -> date:
    if not dates:
        raise InvalidFormat("no dates to pick from")
    return dates[max(0, min(index, len(dates) - 1))]


def dragged_times(
    original_start: TimeOfDay, original_end: TimeOfDay, new_start: TimeOfDay
) -> tuple[TimeOfDay, TimeOfDay] | None:
    """Move keeping the original duration; ``None`` if it would pass midnight."""
    new_end = new_start.minutes + (original_end.minutes - original_start.minutes)
    if new_end >= MINUTES_PER_DAY:
        return None
    return new_start, TimeOfDay(new_end)


def resize_start(
    new_start: TimeOfDay, original_end: TimeOfDay, min_duration: int = DEFAULT_MIN_DURATION
) -> tuple[TimeOfDay, TimeOfDay] | None:
    if original_end.minutes - new_start.minutes < min_duration:
        return None
    return new_start, original_end


def resize_end(
    original_start: TimeOfDay, new_end: TimeOfDay, min_duration: int = DEFAULT_MIN_DURATION
) -> tuple[TimeOfDay, TimeOfDay] | None:
    if new_end.minutes - original_start.minutes < min_duration:
        return None
    return original_start, new_end


def require_min_duration(
    start: TimeOfDay, end: TimeOfDay, min_duration: int = DEFAULT_MIN_DURATION
) -> None:
    if end.minutes - start.minutes < min_duration:
        raise BelowMinimumDuration(
            f"Appointment must last at least {min_duration} minutes",
            min_duration=min_duration,
        )


@dataclass(frozen=True)
class ProposedPlacement:
    """Live drag preview owned by the UI. Never trusted as-is."""

    appointment_id: str | None
    date: date
    start: TimeOfDay
    end: TimeOfDay


@dataclass(frozen=True)
class CommittedPlacement:
    appointment_id: str | None
    date: date
    start: TimeOfDay
    end: TimeOfDay


def preview(
    proposal: ProposedPlacement,
    appointments: Sequence[Appointment],
    working_days: Sequence[WorkingDay],
) -> PlacementResult:
    return validate_placement(
        proposal.date,
        proposal.start,
        proposal.end,
        appointments,
        working_days,
        exclude_id=proposal.appointment_id,
    )


def commit_proposal(
    proposal: ProposedPlacement,
    appointments: Sequence[Appointment],
    working_days: Sequence[WorkingDay],
) -> CommittedPlacement:
    """Promote a preview after re-validating it against the given snapshot."""
    preview(proposal, appointments, working_days).raise_for_reason()
    return CommittedPlacement(
        appointment_id=proposal.appointment_id,
        date=proposal.date,
        start=proposal.start,
        end=proposal.end,
    )
