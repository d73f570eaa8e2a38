from datetime import date
from typing import Iterable

from .domain import Appointment
from .time_utils import TimeOfDay, overlaps


def find_conflict(
    day: date,
    start: TimeOfDay,
    end: TimeOfDay,
    appointments: Iterable[Appointment],
    exclude_id: str | None = None,
) -> Appointment | None:
    """Return some appointment colliding with ``[start, end)`` on ``day``."""
    for appointment in appointments:
        if exclude_id is not None and appointment.id == exclude_id:
            continue
        if not appointment.occupies_calendar:
            continue
        if appointment.date != day:
            continue
        if overlaps(start, end, appointment.start, appointment.end):
            return appointment
    return None
