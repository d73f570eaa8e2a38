from dataclasses import dataclass
from datetime import date
from typing import Sequence

from .availability import WorkingDay, is_within_working_hours
from .conflicts import find_conflict
from .domain import Appointment
from .errors import BookingRuleError, Conflict
from .time_utils import TimeOfDay


@dataclass(frozen=True)
class PlacementResult:
    valid: bool
    reason: BookingRuleError | None = None

    @property
    def message(self) -> str | None:
        return str(self.reason) if self.reason else None

    def raise_for_reason(self) -> None:
        if self.reason is not None:
            raise self.reason


def validate_placement(
    day: date,
    start: TimeOfDay,
    end: TimeOfDay,
    appointments: Sequence[Appointment],
    working_days: Sequence[WorkingDay],
    exclude_id: str | None = None,
) -> PlacementResult:
    """Availability first, then conflicts. The order is part of the contract:
    an out-of-hours candidate always reports hours, never a conflict."""
    availability = is_within_working_hours(day, start, end, working_days)
    if not availability.ok:
        return PlacementResult(valid=False, reason=availability.reason)

    conflicting = find_conflict(day, start, end, appointments, exclude_id)
    if conflicting is not None:
        return PlacementResult(valid=False, reason=Conflict(appointment=conflicting))

    return PlacementResult(valid=True)
