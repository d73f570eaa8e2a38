from datetime import datetime, timedelta, timezone

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from beautypage.api import get_db, register_error_handlers, router
from beautypage.db import Base
from beautypage.models import Appointment

CREATOR = {"X-Actor-Id": "creator-1", "X-Actor-Role": "creator"}
CLIENT = {"X-Actor-Id": "client-1", "X-Actor-Role": "client"}
OTHER_CLIENT = {"X-Actor-Id": "client-2", "X-Actor-Role": "client"}
GUEST = {"X-Actor-Role": "client"}
PAGE = "/api/pages/anna-nails"


def make_client(tmp_path, with_sessions=False):
    db_path = tmp_path / "test_beautypage.db"
    database_url = f"sqlite:///{db_path}"
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False},
    )
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)

    app = FastAPI()
    app.include_router(router)
    register_error_handlers(app)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    if with_sessions:
        return client, TestingSessionLocal
    return client


def booking_day():
    return datetime.now(timezone.utc).date() + timedelta(days=7)


def setup_page(client, **page_fields):
    payload = {"slug": "anna-nails", "name": "Anna Nails", "timezone": "UTC", "currency": "UAH"}
    payload.update(page_fields)
    created = client.post("/api/pages", json=payload, headers=CREATOR)
    assert created.status_code == 200

    service = client.post(
        f"{PAGE}/services",
        json={"name": "Manicure", "price_cents": 50000, "duration_minutes": 60},
        headers=CREATOR,
    )
    assert service.status_code == 200

    day = booking_day()
    hours = client.put(
        f"{PAGE}/working-days/{day.isoformat()}",
        json={"start": "09:00", "end": "18:00", "breaks": [{"start": "13:00", "end": "14:00"}]},
        headers=CREATOR,
    )
    assert hours.status_code == 200
    return service.json()["id"], day


def book(client, service_id, day, start, headers=CLIENT, name="Olena", phone="+380671234567"):
    return client.post(
        f"{PAGE}/appointments",
        json={
            "date": day.isoformat(),
            "start": start,
            "service_ids": [service_id],
            "client_name": name,
            "client_phone": phone,
        },
        headers=headers,
    )


def test_client_books_and_creator_sees_it(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)

    created = book(client, service_id, day, "10:00")
    assert created.status_code == 200
    body = created.json()
    assert body["status"] == "pending"
    assert (body["start"], body["end"]) == ("10:00", "11:00")
    assert body["service_price_cents"] == 50000
    assert body["client_id"] == "client-1"
    assert len(body["lines"]) == 1

    listed = client.get(f"{PAGE}/appointments", params={"start": day.isoformat()}, headers=CREATOR)
    assert listed.status_code == 200
    assert [row["id"] for row in listed.json()] == [body["id"]]

    mine = client.get(f"{PAGE}/appointments", headers=OTHER_CLIENT)
    assert mine.json() == []


def test_overlapping_booking_is_a_conflict(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)
    assert book(client, service_id, day, "10:00").status_code == 200

    clash = book(client, service_id, day, "10:30", headers=OTHER_CLIENT, name="Iryna")
    assert clash.status_code == 409
    assert clash.json() == {"detail": "Conflicts with Olena's appointment", "code": "conflict"}

    touching = book(client, service_id, day, "11:00", headers=OTHER_CLIENT, name="Iryna")
    assert touching.status_code == 200


def test_availability_rejections(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)

    in_break = book(client, service_id, day, "12:30")
    assert in_break.status_code == 400
    assert in_break.json()["code"] == "conflicts_with_break"

    too_early = book(client, service_id, day, "08:00")
    assert too_early.json()["code"] == "outside_working_hours"

    day_off = book(client, service_id, day + timedelta(days=1), "10:00")
    assert day_off.json()["code"] == "not_a_working_day"

    past = book(client, service_id, day - timedelta(days=30), "10:00")
    assert past.json()["code"] == "in_the_past"


def test_validate_placement_endpoint(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)
    appointment_id = book(client, service_id, day, "10:00").json()["id"]

    clash = client.post(
        f"{PAGE}/validate-placement",
        json={"date": day.isoformat(), "start": "10:30", "end": "11:30"},
    )
    assert clash.status_code == 200
    assert clash.json()["valid"] is False
    assert clash.json()["code"] == "conflict"
    assert clash.json()["conflicting_appointment_id"] == appointment_id

    own = client.post(
        f"{PAGE}/validate-placement",
        json={"date": day.isoformat(), "start": "10:30", "end": "11:30", "appointment_id": appointment_id},
    )
    assert own.json() == {"valid": True, "reason": None, "code": None, "conflicting_appointment_id": None}


def test_totals_endpoint(tmp_path):
    client = make_client(tmp_path)
    setup_page(client)
    ids = []
    for name, price, minutes, currency in [("Gel", 1000, 30, "USD"), ("Design", 2000, 45, "USD"), ("Brows", 900, 20, "EUR")]:
        res = client.post(
            f"{PAGE}/services",
            json={"name": name, "price_cents": price, "duration_minutes": minutes, "currency": currency},
            headers=CREATOR,
        )
        ids.append(res.json()["id"])

    totals = client.post(f"{PAGE}/totals", json={"service_ids": ids[:2]})
    assert totals.json() == {"price_cents": 3000, "duration_minutes": 75, "currency": "USD"}

    mixed = client.post(f"{PAGE}/totals", json={"service_ids": [ids[0], ids[2]]})
    assert mixed.status_code == 400
    assert mixed.json()["code"] == "mixed_currencies"

    empty = client.post(f"{PAGE}/totals", json={"service_ids": []})
    assert empty.json()["code"] == "empty_selection"


def test_status_flow_and_history(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)
    appointment_id = book(client, service_id, day, "10:00").json()["id"]
    status_url = f"{PAGE}/appointments/{appointment_id}/status"

    confirmed = client.patch(status_url, json={"status": "confirmed"}, headers=CREATOR)
    assert confirmed.json()["status"] == "confirmed"

    no_reason = client.patch(status_url, json={"status": "cancelled"}, headers=CLIENT)
    assert no_reason.status_code == 400
    assert no_reason.json()["code"] == "cancellation_reason_required"

    stranger = client.patch(status_url, json={"status": "cancelled", "reason": "other"}, headers=OTHER_CLIENT)
    assert stranger.status_code == 403

    cancelled = client.patch(status_url, json={"status": "cancelled", "reason": "feeling_unwell"}, headers=CLIENT)
    assert cancelled.status_code == 200
    assert cancelled.json()["cancelled_by"] == "client"
    assert cancelled.json()["cancellation_reason"] == "feeling_unwell"
    assert cancelled.json()["cancelled_at"] is not None

    history = client.get(f"{PAGE}/appointments/{appointment_id}/status-events", headers=CLIENT)
    assert [(e["action"], e["to_status"]) for e in history.json()] == [
        ("created", "pending"),
        ("status_update", "confirmed"),
        ("client_cancel", "cancelled"),
    ]

    again = book(client, service_id, day, "10:00", headers=OTHER_CLIENT, name="Iryna")
    assert again.status_code == 200


def test_illegal_transition(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)
    appointment_id = book(client, service_id, day, "10:00").json()["id"]

    res = client.patch(
        f"{PAGE}/appointments/{appointment_id}/status", json={"status": "completed"}, headers=CREATOR
    )
    assert res.status_code == 400
    assert res.json()["code"] == "illegal_transition"


def test_reschedule_and_resize(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)
    appointment_id = book(client, service_id, day, "10:00").json()["id"]
    url = f"{PAGE}/appointments/{appointment_id}"

    moved = client.patch(f"{url}/reschedule", json={"date": day.isoformat(), "start": "15:00"}, headers=CREATOR)
    assert moved.status_code == 200
    assert (moved.json()["start"], moved.json()["end"]) == ("15:00", "16:00")

    into_break = client.patch(f"{url}/reschedule", json={"date": day.isoformat(), "start": "12:30"}, headers=CREATOR)
    assert into_break.json()["code"] == "conflicts_with_break"

    by_client = client.patch(f"{url}/reschedule", json={"date": day.isoformat(), "start": "16:00"}, headers=CLIENT)
    assert by_client.status_code == 403

    resized = client.patch(f"{url}/resize", json={"start": "15:00", "end": "16:30"}, headers=CREATOR)
    assert resized.json()["end"] == "16:30"
    # the booked duration is a snapshot and survives a resize
    assert resized.json()["service_duration_minutes"] == 60

    too_short = client.patch(f"{url}/resize", json={"start": "15:00", "end": "15:10"}, headers=CREATOR)
    assert too_short.json()["code"] == "below_minimum_duration"

    client.patch(f"{url}/status", json={"status": "confirmed"}, headers=CREATOR)
    client.patch(f"{url}/status", json={"status": "completed"}, headers=CREATOR)
    locked = client.patch(f"{url}/reschedule", json={"date": day.isoformat(), "start": "09:00"}, headers=CREATOR)
    assert locked.json()["code"] == "cannot_modify"


def test_quick_booking(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)

    quick = client.post(
        f"{PAGE}/appointments/quick",
        json={"date": day.isoformat(), "start": "16:00", "duration_minutes": 45},
        headers=CREATOR,
    )
    assert quick.status_code == 200
    body = quick.json()
    assert body["status"] == "confirmed"
    assert body["is_quick_booking"] is True
    assert body["client_name"] == "Walk-in client"
    assert body["end"] == "16:45"

    by_client = client.post(
        f"{PAGE}/appointments/quick",
        json={"date": day.isoformat(), "start": "11:00", "service_ids": [service_id]},
        headers=CLIENT,
    )
    assert by_client.status_code == 403


def test_auto_confirm_page(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client, auto_confirm=True)
    assert book(client, service_id, day, "10:00").json()["status"] == "confirmed"


def test_guest_needs_a_phone(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)

    res = book(client, service_id, day, "10:00", headers=GUEST, phone=None)
    assert res.status_code == 400
    assert res.json()["code"] == "invalid_format"

    ok = book(client, service_id, day, "10:00", headers=GUEST)
    assert ok.status_code == 200
    assert ok.json()["client_id"] is None


def test_slots_endpoint(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client, slot_interval_minutes=60)
    book(client, service_id, day, "10:00")

    res = client.get(f"{PAGE}/slots", params={"date": day.isoformat(), "service_id": service_id})
    assert res.status_code == 200
    assert [s["time"] for s in res.json()] == ["09:00", "11:00", "12:00", "14:00", "15:00", "16:00", "17:00"]

    detailed = client.get(
        f"{PAGE}/slots",
        params={"date": day.isoformat(), "service_id": service_id, "include_unavailable": "true"},
    )
    reasons = {s["time"]: s["reason"] for s in detailed.json()}
    assert reasons["10:00"] == "booked"
    assert reasons["13:00"] == "break"


def test_unknown_page_and_appointment(tmp_path):
    client = make_client(tmp_path)
    res = client.get("/api/pages/nobody")
    assert res.status_code == 404
    assert res.json()["code"] == "not_found"

    setup_page(client)
    missing = client.get(f"{PAGE}/appointments/does-not-exist", headers=CREATOR)
    assert missing.status_code == 404


def test_corrupt_row_is_reported_as_generic_error(tmp_path):
    client, SessionLocal = make_client(tmp_path, with_sessions=True)
    service_id, day = setup_page(client)
    appointment_id = book(client, service_id, day, "10:00").json()["id"]

    with SessionLocal() as db:
        row = db.get(Appointment, appointment_id)
        row.start_time = "99:99"
        db.commit()

    res = client.post(
        f"{PAGE}/validate-placement",
        json={"date": day.isoformat(), "start": "15:00", "end": "16:00"},
    )
    assert res.status_code == 500
    assert res.json() == {"detail": "Something went wrong", "code": "data_store_error"}


def _second_service(client, name="Pedicure", price_cents=30000, duration_minutes=30):
    created = client.post(
        f"{PAGE}/services",
        json={"name": name, "price_cents": price_cents, "duration_minutes": duration_minutes},
        headers=CREATOR,
    )
    assert created.status_code == 200
    return created.json()["id"]


def test_added_service_cannot_run_into_the_next_appointment(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)
    extra_id = _second_service(client)
    appointment_id = book(client, service_id, day, "10:00").json()["id"]
    next_id = book(client, service_id, day, "11:15", headers=OTHER_CLIENT, name="Iryna").json()["id"]
    url = f"{PAGE}/appointments/{appointment_id}/services"

    check = client.get(f"{url}/check", params={"service_id": extra_id}, headers=CREATOR)
    assert check.status_code == 200
    assert check.json()["new_end"] == "11:30"
    assert check.json()["valid"] is False
    assert check.json()["code"] == "conflict"
    assert check.json()["conflicting_appointment_id"] == next_id

    extended = client.post(url, json={"service_id": extra_id}, headers=CREATOR)
    assert extended.status_code == 409
    assert extended.json()["code"] == "conflict"

    kept = client.post(url, json={"service_id": extra_id, "extend_duration": False}, headers=CREATOR)
    assert kept.status_code == 200
    body = kept.json()
    assert (body["start"], body["end"]) == ("10:00", "11:00")
    assert body["service_price_cents"] == 80000
    assert body["service_name"] == "Manicure + Pedicure"
    assert len(body["lines"]) == 2

    by_client = client.post(url, json={"service_id": extra_id}, headers=CLIENT)
    assert by_client.status_code == 403


def test_added_service_cannot_run_into_a_break(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)
    extra_id = _second_service(client)
    appointment_id = book(client, service_id, day, "12:00").json()["id"]

    res = client.post(
        f"{PAGE}/appointments/{appointment_id}/services", json={"service_id": extra_id}, headers=CREATOR
    )
    assert res.status_code == 400
    assert res.json()["code"] == "conflicts_with_break"
    assert client.get(f"{PAGE}/appointments/{appointment_id}", headers=CREATOR).json()["end"] == "13:00"


def test_removing_a_service_shrinks_end_and_price(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)
    extra_id = _second_service(client)
    appointment_id = book(client, service_id, day, "10:00").json()["id"]
    url = f"{PAGE}/appointments/{appointment_id}/services"

    extended = client.post(url, json={"service_id": extra_id}, headers=CREATOR).json()
    assert extended["end"] == "11:30"
    assert extended["service_price_cents"] == 80000
    assert extended["service_duration_minutes"] == 90

    manicure_line = extended["lines"][0]["id"]
    removed = client.delete(f"{url}/{manicure_line}", headers=CREATOR)
    assert removed.status_code == 200
    body = removed.json()
    assert (body["start"], body["end"]) == ("10:00", "10:30")
    assert body["service_price_cents"] == 30000
    assert body["service_duration_minutes"] == 30
    assert body["service_name"] == "Pedicure"
    assert len(body["lines"]) == 1

    last = client.delete(f"{url}/{body['lines'][0]['id']}", headers=CREATOR)
    assert last.status_code == 400
    assert last.json()["code"] == "cannot_modify"

    missing = client.delete(f"{url}/no-such-line", headers=CREATOR)
    assert missing.status_code == 404

    history = client.get(f"{PAGE}/appointments/{appointment_id}/status-events", headers=CREATOR)
    assert [e["action"] for e in history.json()][-2:] == ["service_added", "service_removed"]


def test_creator_notes_are_staff_only(tmp_path):
    client = make_client(tmp_path)
    service_id, day = setup_page(client)
    appointment_id = book(client, service_id, day, "10:00").json()["id"]
    url = f"{PAGE}/appointments/{appointment_id}"

    noted = client.patch(f"{url}/notes", json={"notes": "Prefers almond shape"}, headers=CREATOR)
    assert noted.status_code == 200
    assert noted.json()["creator_notes"] == "Prefers almond shape"

    assert client.get(url, headers=CREATOR).json()["creator_notes"] == "Prefers almond shape"
    assert client.get(url, headers=CLIENT).json()["creator_notes"] is None

    assert client.patch(f"{url}/notes", json={"notes": "mine"}, headers=CLIENT).status_code == 403
    assert client.patch(f"{url}/notes", json={"notes": "x" * 2001}, headers=CREATOR).status_code == 422
