from datetime import date

import pytest

from beautypage.core.availability import TimeRange, WorkingDay
from beautypage.core.domain import Appointment, AppointmentStatus
from beautypage.core.drag import (
    CommittedPlacement,
    GridConfig,
    ProposedPlacement,
    commit_proposal,
    date_from_index,
    day_index_from_x,
    dragged_times,
    preview,
    require_min_duration,
    resize_end,
    resize_start,
    time_from_delta,
    time_from_position,
)
from beautypage.core.errors import BelowMinimumDuration, Conflict, InvalidFormat
from beautypage.core.time_utils import TimeOfDay

t = TimeOfDay.parse
GRID = GridConfig(start_hour=8, end_hour=20)
D = date(2026, 11, 3)


def test_absolute_position_snaps_to_interval():
    # 720px for 12 hours, one pixel per minute
    assert time_from_position(100 + 67, 100, 720, GRID) == t("09:00")
    assert time_from_position(100 + 68, 100, 720, GRID) == t("09:15")
    assert time_from_position(100 + 68, 100, 720, GRID, interval=5) == t("09:10")


def test_absolute_position_clamps_to_grid():
    assert time_from_position(0, 100, 720, GRID) == t("08:00")
    assert time_from_position(5000, 100, 720, GRID) == t("20:00")


def test_full_day_grid_never_returns_midnight_of_next_day():
    grid = GridConfig(start_hour=0, end_hour=24)
    assert time_from_position(10_000, 0, 1440, grid) == t("23:59")


def test_delta_positioning_does_not_drift():
    start = t("10:00")
    assert time_from_delta(31, 720, start, GRID) == t("10:30")
    assert time_from_delta(7, 720, start, GRID) == start
    assert time_from_delta(-7, 720, start, GRID) == start
    assert time_from_delta(-1000, 720, start, GRID) == t("08:00")


def test_day_index_and_date_from_index_clamp():
    assert day_index_from_x(100 + 350, 100, 700, 7) == 3
    assert day_index_from_x(5000, 100, 700, 7) == 6
    assert day_index_from_x(-20, 100, 700, 7) == 0
    dates = [date(2026, 11, d) for d in range(2, 9)]
    assert date_from_index(dates, 3) == date(2026, 11, 5)
    assert date_from_index(dates, 99) == date(2026, 11, 8)
    with pytest.raises(InvalidFormat):
        day_index_from_x(10, 0, 700, 0)


def test_dragged_times_keep_duration_and_refuse_midnight():
    assert dragged_times(t("10:00"), t("11:00"), t("14:00")) == (t("14:00"), t("15:00"))
    assert dragged_times(t("10:00"), t("11:00"), t("23:30")) is None


def test_resize_respects_minimum_duration():
    assert resize_start(t("10:50"), t("11:00"), 15) is None
    assert resize_start(t("10:45"), t("11:00"), 15) == (t("10:45"), t("11:00"))
    assert resize_end(t("10:00"), t("10:10"), 15) is None
    assert resize_end(t("10:00"), t("10:30"), 15) == (t("10:00"), t("10:30"))
    with pytest.raises(BelowMinimumDuration):
        require_min_duration(t("10:00"), t("10:05"), 15)


def test_grid_config_validation():
    with pytest.raises(InvalidFormat):
        GridConfig(start_hour=20, end_hour=8)
    with pytest.raises(InvalidFormat):
        time_from_position(10, 0, 0, GRID)


def _day_and_appointments():
    day = WorkingDay(date=D, range=TimeRange.of("09:00", "18:00"))
    appointments = [
        Appointment(id="a1", date=D, start=t("10:00"), end=t("11:00"), status=AppointmentStatus.CONFIRMED, client_name="Iryna"),
        Appointment(id="a2", date=D, start=t("12:00"), end=t("13:00"), status=AppointmentStatus.CONFIRMED, client_name="Olha"),
    ]
    return [day], appointments


def test_commit_revalidates_the_proposal():
    days, appointments = _day_and_appointments()
    proposal = ProposedPlacement(appointment_id="a1", date=D, start=t("12:30"), end=t("13:30"))
    assert not preview(proposal, appointments, days).valid
    with pytest.raises(Conflict) as exc:
        commit_proposal(proposal, appointments, days)
    assert "Olha" in str(exc.value)


def test_commit_ignores_the_moving_appointment_itself():
    days, appointments = _day_and_appointments()
    proposal = ProposedPlacement(appointment_id="a1", date=D, start=t("10:30"), end=t("11:30"))
    committed = commit_proposal(proposal, appointments, days)
    assert committed == CommittedPlacement(appointment_id="a1", date=D, start=t("10:30"), end=t("11:30"))
