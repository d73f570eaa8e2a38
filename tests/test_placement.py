from datetime import date, timedelta

import pytest

from beautypage.core.availability import TimeRange, WorkingDay, is_within_working_hours
from beautypage.core.conflicts import find_conflict
from beautypage.core.domain import Appointment, AppointmentStatus
from beautypage.core.errors import (
    Conflict,
    ConflictsWithBreak,
    InvalidFormat,
    NotAWorkingDay,
    OutsideWorkingHours,
)
from beautypage.core.placement import validate_placement
from beautypage.core.time_utils import TimeOfDay

D = date(2026, 11, 3)
t = TimeOfDay.parse


def working_day(day=D):
    return WorkingDay(
        date=day,
        range=TimeRange.of("09:00", "18:00"),
        breaks=(TimeRange.of("13:00", "14:00"),),
    )


def booked(start="10:00", end="11:00", status=AppointmentStatus.CONFIRMED, appointment_id="a1", day=D):
    return Appointment(
        id=appointment_id,
        date=day,
        start=t(start),
        end=t(end),
        status=status,
        client_name="Olena",
    )


def test_working_hours_and_breaks():
    days = [working_day()]

    result = is_within_working_hours(D, t("12:30"), t("13:30"), days)
    assert not result.ok
    assert isinstance(result.reason, ConflictsWithBreak)
    assert str(result.reason) == "Conflicts with break time"

    result = is_within_working_hours(D, t("08:00"), t("09:00"), days)
    assert isinstance(result.reason, OutsideWorkingHours)

    assert is_within_working_hours(D, t("14:00"), t("15:00"), days).ok
    assert is_within_working_hours(D, t("17:00"), t("18:00"), days).ok
    assert is_within_working_hours(D, t("12:00"), t("13:00"), days).ok


def test_day_without_hours_is_not_a_working_day():
    result = is_within_working_hours(D + timedelta(days=1), t("10:00"), t("11:00"), [working_day()])
    assert isinstance(result.reason, NotAWorkingDay)


def test_working_day_rejects_bad_breaks():
    with pytest.raises(InvalidFormat):
        WorkingDay(date=D, range=TimeRange.of("09:00", "18:00"), breaks=(TimeRange.of("08:00", "09:30"),))
    with pytest.raises(InvalidFormat):
        WorkingDay(
            date=D,
            range=TimeRange.of("09:00", "18:00"),
            breaks=(TimeRange.of("12:00", "13:00"), TimeRange.of("12:30", "13:30")),
        )
    with pytest.raises(InvalidFormat):
        TimeRange.of("10:00", "10:00")


def test_breaks_are_kept_sorted():
    wd = WorkingDay(
        date=D,
        range=TimeRange.of("09:00", "18:00"),
        breaks=(TimeRange.of("15:00", "15:15"), TimeRange.of("11:00", "11:15")),
    )
    assert [str(b) for b in wd.breaks] == ["11:00-11:15", "15:00-15:15"]


def test_find_conflict_same_day_other_day_and_excluded():
    appointments = [booked()]

    hit = find_conflict(D, t("10:30"), t("11:30"), appointments)
    assert hit is not None and hit.id == "a1"

    assert find_conflict(D + timedelta(days=1), t("10:30"), t("11:30"), appointments) is None
    assert find_conflict(D, t("10:30"), t("11:30"), appointments, exclude_id="a1") is None
    assert find_conflict(D, t("11:00"), t("12:00"), appointments) is None


def test_released_appointments_do_not_block():
    for status in (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW):
        assert find_conflict(D, t("10:00"), t("11:00"), [booked(status=status)]) is None
    assert find_conflict(D, t("10:00"), t("11:00"), [booked(status=AppointmentStatus.PENDING)]) is not None


def test_validate_placement_names_the_conflicting_client():
    result = validate_placement(D, t("10:30"), t("11:30"), [booked()], [working_day()])
    assert not result.valid
    assert isinstance(result.reason, Conflict)
    assert result.message == "Conflicts with Olena's appointment"
    assert result.reason.appointment.id == "a1"
    with pytest.raises(Conflict):
        result.raise_for_reason()


def test_validate_placement_checks_hours_before_conflicts():
    early = booked(start="09:00", end="10:00")
    result = validate_placement(D, t("08:30"), t("09:30"), [early], [working_day()])
    assert isinstance(result.reason, OutsideWorkingHours)


def test_validate_placement_accepts_free_slot_and_own_position():
    appointments = [booked()]
    assert validate_placement(D, t("14:00"), t("15:00"), appointments, [working_day()]).valid
    moved = validate_placement(D, t("10:15"), t("11:15"), appointments, [working_day()], exclude_id="a1")
    assert moved.valid
    assert moved.message is None
