from datetime import date, datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from beautypage import services
from beautypage.core.domain import Actor, ActorRole
from beautypage.core.errors import CannotModify, Conflict, InvalidFormat
from beautypage.core.time_utils import format_time
from beautypage.db import Base

CREATOR = Actor(role=ActorRole.CREATOR, user_id="creator-1")
CLIENT = Actor(role=ActorRole.CLIENT, user_id="client-1")
DAY = date(2026, 11, 17)


@pytest.fixture
def db(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'calendar.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    with SessionLocal() as session:
        yield session


def _page(db, **fields):
    page = services.create_page(db, CREATOR, slug="anna-nails", name="Anna Nails", timezone_name="UTC", **fields)
    manicure = services.create_service(db, page, CREATOR, name="Manicure", price_cents=50000, duration_minutes=60)
    services.upsert_working_day(db, page, CREATOR, DAY, "09:00", "18:00")
    return page, manicure


def test_last_bookable_day_lists_and_books_late_slots(db):
    page, manicure = _page(db, max_booking_days_ahead=30)
    now = datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)

    slots = services.list_available_slots(db, page, DAY, [manicure.id], now=now)
    assert "15:00" in [format_time(slot.time) for slot in slots]

    booked = services.create_booking(
        db, page, CLIENT, day=DAY, start="15:00", service_ids=[manicure.id],
        client_name="Olena", client_phone="+380671234567", now=now,
    )
    assert (booked.start_time, booked.end_time) == ("15:00", "16:00")


def test_slot_promotion_matches_the_line_start(db):
    page, manicure = _page(db)
    polish = services.create_service(db, page, CREATOR, name="Polish", price_cents=20000, duration_minutes=30)
    promo = services.create_promotion(
        db, page, CREATOR, polish.id, "slot", 50, slot_date=DAY, slot_start="11:00"
    )
    now = datetime(2026, 11, 1, 8, 0, tzinfo=timezone.utc)

    booked = services.create_booking(
        db, page, CLIENT, day=DAY, start="10:00", service_ids=[manicure.id, polish.id],
        client_name="Olena", client_phone="+380671234567", now=now,
    )
    first, second = booked.lines
    assert first.discounted_price_cents is None
    assert second.discounted_price_cents == 10000
    assert second.promotion_id == promo.id
    assert booked.service_price_cents == 60000


def test_start_early_keeps_the_length(db):
    page, manicure = _page(db)
    appointment = services.create_quick_booking(db, page, CREATOR, DAY, "10:00", service_ids=[manicure.id])
    assert appointment.status == "confirmed"

    started = services.start_appointment_early(
        db, page, CREATOR, appointment.id, now=datetime(2026, 11, 17, 9, 40, 30, tzinfo=timezone.utc)
    )
    assert (started.start_time, started.end_time) == ("09:40", "10:40")
    events = services.list_status_events(db, page, appointment.id)
    assert "started_early" in [event.action for event in events]

    with pytest.raises(CannotModify):
        services.start_appointment_early(
            db, page, CREATOR, appointment.id, now=datetime(2026, 11, 17, 9, 50, tzinfo=timezone.utc)
        )


def test_start_early_needs_a_confirmed_appointment_and_free_time(db):
    page, manicure = _page(db)
    now = datetime(2026, 11, 1, 8, 0, tzinfo=timezone.utc)
    pending = services.create_booking(
        db, page, CLIENT, day=DAY, start="14:00", service_ids=[manicure.id],
        client_name="Olena", client_phone="+380671234567", now=now,
    )
    assert pending.status == "pending"
    with pytest.raises(CannotModify):
        services.start_appointment_early(
            db, page, CREATOR, pending.id, now=datetime(2026, 11, 17, 13, 30, tzinfo=timezone.utc)
        )

    services.create_quick_booking(db, page, CREATOR, DAY, "09:00", duration_minutes=30)
    later = services.create_quick_booking(db, page, CREATOR, DAY, "10:00", service_ids=[manicure.id])
    with pytest.raises(Conflict):
        services.start_appointment_early(
            db, page, CREATOR, later.id, now=datetime(2026, 11, 17, 9, 15, tzinfo=timezone.utc)
        )
    db.refresh(later)
    assert later.start_time == "10:00"


def test_creator_notes(db):
    page, manicure = _page(db)
    appointment = services.create_quick_booking(db, page, CREATOR, DAY, "10:00", service_ids=[manicure.id])

    noted = services.update_creator_notes(db, page, CREATOR, appointment.id, "  Prefers almond shape ")
    assert noted.creator_notes == "Prefers almond shape"
    assert services.update_creator_notes(db, page, CREATOR, appointment.id, "   ").creator_notes is None

    with pytest.raises(InvalidFormat):
        services.update_creator_notes(db, page, CREATOR, appointment.id, "x" * 2001)
