import json
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .core.availability import TimeRange, WorkingDay, is_within_working_hours
from .core.cancellation import (
    BlockSource,
    CancellationPolicy,
    ClientBlock,
    HistoryEvent,
    HistoryKind,
    can_cancel,
    evaluate_block_trigger,
    find_active_block,
    merge_block,
    normalize_phone,
)
from .core.domain import (
    Actor,
    ActorRole,
    Appointment,
    AppointmentStatus,
    BookingService,
    CancelledBy,
    RELEASED_STATUSES,
)
from .core.drag import (
    CommittedPlacement,
    ProposedPlacement,
    commit_proposal,
    dragged_times,
    preview,
    require_min_duration,
)
from .core.errors import (
    BelowMinimumDuration,
    BookingRuleError,
    CancellationWindowClosed,
    CannotModify,
    ClientBlocked,
    Conflict,
    DataStoreError,
    EmptySelection,
    InvalidFormat,
    MixedCurrencies,
    NotAllowed,
    NotFound,
    OutsideWorkingHours,
    SlotTaken,
)
from .core.lifecycle import allowed_targets, ensure_can_reschedule, initial_status, transition
from .core.patterns import WorkingHours, bulk, filter_existing, rotation, weekly
from .core.placement import PlacementResult
from .core.promotions import (
    Promotion,
    PromotionStatus,
    PromotionType,
    SalePromotion,
    SlotPromotion,
    TimePromotion,
    best_promotion,
    discounted_price,
    mark_slot_booked,
)
from .core.slots import (
    BookingSettings,
    Slot,
    available_only,
    check_booking_window,
    generate_slots,
    is_too_far_ahead,
)
from .core.time_utils import MINUTES_PER_DAY, TimeOfDay, as_time_of_day, combine, format_time
from .core.totals import Totals, compute_totals

logger = structlog.get_logger("beautypage.services")

MAX_PATTERN_DAYS = 366
WALK_IN_CLIENT_NAME = "Walk-in client"
CREATOR_NOTES_MAX_LENGTH = 2000


def _aware_utc(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _naive_utc(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(tzinfo=None)


def _actor_label(actor: Actor) -> str:
    if actor.user_id:
        return f"{actor.role.value}:{actor.user_id}"
    return actor.role.value


def _data_store_error(kind: str, row_id, exc: Exception) -> DataStoreError:
    logger.error("data_store_error", kind=kind, row_id=row_id, error=str(exc))
    return DataStoreError(kind=kind, row_id=row_id)


@contextmanager
def _logged_rejection(db: Session, action: str, **context):
    """Roll back and log expected rejections; they are events, not errors."""
    try:
        yield
    except BookingRuleError as exc:
        db.rollback()
        logger.info("booking_rule_rejected", action=action, code=exc.code, reason=str(exc), **context)
        raise


# Row <-> engine conversions. A row that cannot be converted breaks the
# store contract and is reported as DataStoreError.


def to_core_appointment(row: models.Appointment) -> Appointment:
    try:
        return Appointment(
            id=row.id,
            date=row.day,
            start=TimeOfDay.parse(row.start_time),
            end=TimeOfDay.parse(row.end_time),
            status=AppointmentStatus.parse(row.status),
            client_id=row.client_id,
            client_name=row.client_name or "",
            client_phone=row.client_phone,
            service_id=row.service_id,
            service_price_cents=int(row.service_price_cents or 0),
            service_duration_minutes=int(row.service_duration_minutes or 0),
            service_currency=row.service_currency or "",
            client_notes=row.client_notes,
            cancelled_by=CancelledBy(row.cancelled_by) if row.cancelled_by else None,
            cancellation_reason=row.cancellation_reason,
            cancelled_at=row.cancelled_at,
        )
    except ValueError as exc:
        raise _data_store_error("appointment", row.id, exc) from exc


def to_core_working_day(row: models.WorkingDay) -> WorkingDay:
    try:
        return WorkingDay(
            date=row.day,
            range=TimeRange.of(row.start_time, row.end_time),
            breaks=tuple(TimeRange.of(b.start_time, b.end_time) for b in row.breaks),
        )
    except ValueError as exc:
        raise _data_store_error("working_day", row.id, exc) from exc


def to_core_service(row: models.Service) -> BookingService:
    return BookingService(
        id=row.id,
        name=row.name,
        price_cents=int(row.price_cents),
        duration_minutes=int(row.duration_minutes),
        currency=row.currency,
    )


def to_core_promotion(row: models.Promotion) -> Promotion:
    try:
        common = dict(
            id=row.id,
            beauty_page_id=row.beauty_page_id,
            service_id=row.service_id,
            discount_percentage=int(row.discount_percentage),
            original_price_cents=int(row.original_price_cents),
            discounted_price_cents=int(row.discounted_price_cents),
            status=PromotionStatus(row.status),
            created_at=row.created_at,
        )
        kind = PromotionType(row.type)
        if kind == PromotionType.SALE:
            return SalePromotion(**common, starts_at=row.starts_at, ends_at=row.ends_at)
        if kind == PromotionType.SLOT:
            return SlotPromotion(
                **common,
                slot_date=row.slot_date,
                slot_start=TimeOfDay.parse(row.slot_start_time) if row.slot_start_time else None,
                slot_end=TimeOfDay.parse(row.slot_end_time) if row.slot_end_time else None,
            )
        days = json.loads(row.recurring_days) if row.recurring_days else None
        return TimePromotion(
            **common,
            recurring_start=TimeOfDay.parse(row.recurring_start_time) if row.recurring_start_time else None,
            recurring_days=frozenset(int(d) for d in days) if days is not None else None,
            recurring_valid_until=row.recurring_valid_until,
        )
    except (ValueError, TypeError) as exc:
        raise _data_store_error("promotion", row.id, exc) from exc


def to_core_block(row: models.BlockedClient) -> ClientBlock:
    try:
        source = BlockSource(row.source)
    except ValueError as exc:
        raise _data_store_error("blocked_client", row.id, exc) from exc
    return ClientBlock(
        client_id=row.client_id,
        client_phone=row.client_phone,
        blocked_at=row.blocked_at,
        blocked_until=row.blocked_until,
        source=source,
        no_show_count=int(row.no_show_count or 0),
    )


def _service_window(row: models.Service) -> TimeRange | None:
    if not row.available_from or not row.available_to:
        return None
    try:
        return TimeRange.of(row.available_from, row.available_to)
    except ValueError as exc:
        raise _data_store_error("service", row.id, exc) from exc


# Beauty pages and staff


def _validate_timezone(name: str) -> str:
    clean = (name or "").strip()
    try:
        ZoneInfo(clean)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidFormat(f"unknown timezone: {name!r}") from exc
    return clean


def page_timezone(page: models.BeautyPage) -> ZoneInfo:
    try:
        return ZoneInfo(page.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise _data_store_error("beauty_page", page.id, exc) from exc


def booking_settings(page: models.BeautyPage) -> BookingSettings:
    return BookingSettings(
        timezone=page.timezone,
        slot_interval_minutes=int(page.slot_interval_minutes or settings.DEFAULT_SLOT_INTERVAL_MINUTES),
        auto_confirm=bool(page.auto_confirm),
        min_booking_notice_hours=int(page.min_booking_notice_hours or 0),
        max_booking_days_ahead=int(page.max_booking_days_ahead or 0),
    )


def get_page_by_slug(db: Session, slug: str) -> models.BeautyPage:
    page = db.execute(
        select(models.BeautyPage).where(models.BeautyPage.slug == (slug or "").strip().lower())
    ).scalar_one_or_none()
    if not page:
        raise NotFound("Beauty page not found")
    return page


def create_page(
    db: Session,
    owner: Actor,
    slug: str,
    name: str,
    timezone_name: str | None = None,
    currency: str | None = None,
    slot_interval_minutes: int | None = None,
    auto_confirm: bool = False,
    min_booking_notice_hours: int = 0,
    max_booking_days_ahead: int = 90,
) -> models.BeautyPage:
    if owner.role != ActorRole.CREATOR or not owner.user_id:
        raise NotAllowed("Only creators can open a beauty page")
    clean_slug = (slug or "").strip().lower()
    exists = db.execute(
        select(models.BeautyPage.id).where(models.BeautyPage.slug == clean_slug)
    ).scalar_one_or_none()
    if exists:
        raise Conflict("This page address is already taken")

    page = models.BeautyPage(
        slug=clean_slug,
        name=name.strip(),
        owner_id=owner.user_id,
        timezone=_validate_timezone(timezone_name or settings.DEFAULT_TIMEZONE),
        currency=(currency or settings.DEFAULT_CURRENCY).strip().upper(),
        slot_interval_minutes=int(slot_interval_minutes or settings.DEFAULT_SLOT_INTERVAL_MINUTES),
        auto_confirm=bool(auto_confirm),
        min_booking_notice_hours=int(min_booking_notice_hours),
        max_booking_days_ahead=int(max_booking_days_ahead),
    )
    db.add(page)
    db.commit()
    db.refresh(page)
    logger.info("beauty_page_created", page_id=page.id, slug=page.slug)
    return page


def update_page_settings(db: Session, page: models.BeautyPage, actor: Actor, **fields) -> models.BeautyPage:
    require_staff(db, page, actor)
    if fields.get("timezone") is not None:
        fields["timezone"] = _validate_timezone(fields["timezone"])
    if fields.get("currency") is not None:
        fields["currency"] = fields["currency"].strip().upper()
    allowed = {
        "name",
        "timezone",
        "currency",
        "slot_interval_minutes",
        "auto_confirm",
        "min_booking_notice_hours",
        "max_booking_days_ahead",
    }
    for key, value in fields.items():
        if key in allowed and value is not None:
            setattr(page, key, value)
    db.commit()
    db.refresh(page)
    return page


def is_page_staff(db: Session, page: models.BeautyPage, user_id: str | None) -> bool:
    if not user_id:
        return False
    if page.owner_id == user_id:
        return True
    admin = db.execute(
        select(models.PageAdmin.id).where(
            models.PageAdmin.beauty_page_id == page.id,
            models.PageAdmin.user_id == user_id,
        )
    ).scalar_one_or_none()
    return admin is not None


def require_staff(db: Session, page: models.BeautyPage, actor: Actor) -> None:
    if not actor.is_staff or not is_page_staff(db, page, actor.user_id):
        raise NotAllowed("Only the page creator or its admins can do this")


def add_page_admin(db: Session, page: models.BeautyPage, actor: Actor, user_id: str) -> models.PageAdmin:
    if actor.user_id != page.owner_id:
        raise NotAllowed("Only the page creator can add admins")
    clean = (user_id or "").strip()
    if not clean:
        raise InvalidFormat("admin user id is required")
    if is_page_staff(db, page, clean):
        raise Conflict("User already manages this page")
    admin = models.PageAdmin(beauty_page_id=page.id, user_id=clean)
    db.add(admin)
    db.commit()
    db.refresh(admin)
    return admin


# Services offered on a page


def create_service(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    name: str,
    price_cents: int,
    duration_minutes: int,
    currency: str | None = None,
    available_from: str | None = None,
    available_to: str | None = None,
) -> models.Service:
    require_staff(db, page, actor)
    if price_cents < 0 or duration_minutes <= 0:
        raise InvalidFormat("price must not be negative and duration must be positive")
    if bool(available_from) != bool(available_to):
        raise InvalidFormat("service window needs both a start and an end")
    window = TimeRange.of(available_from, available_to) if available_from else None

    service = models.Service(
        beauty_page_id=page.id,
        name=name.strip(),
        price_cents=int(price_cents),
        duration_minutes=int(duration_minutes),
        currency=(currency or page.currency).strip().upper(),
        available_from=format_time(window.start) if window else None,
        available_to=format_time(window.end) if window else None,
    )
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


def list_services(db: Session, page: models.BeautyPage) -> list[models.Service]:
    stmt = (
        select(models.Service)
        .where(models.Service.beauty_page_id == page.id, models.Service.is_active.is_(True))
        .order_by(models.Service.name.asc())
    )
    return db.execute(stmt).scalars().all()


def get_services_for_selection(
    db: Session, page: models.BeautyPage, service_ids: list[str]
) -> list[models.Service]:
    """Services in the order the client picked them."""
    if not service_ids:
        raise EmptySelection()
    rows = db.execute(
        select(models.Service).where(
            models.Service.beauty_page_id == page.id,
            models.Service.id.in_(set(service_ids)),
            models.Service.is_active.is_(True),
        )
    ).scalars().all()
    by_id = {row.id: row for row in rows}
    missing = [sid for sid in service_ids if sid not in by_id]
    if missing:
        raise NotFound(f"Service not found: {missing[0]}")
    return [by_id[sid] for sid in service_ids]


def totals_for(db: Session, page: models.BeautyPage, service_ids: list[str]) -> Totals:
    rows = get_services_for_selection(db, page, service_ids)
    return compute_totals([to_core_service(row) for row in rows])


# Working days


def get_working_day_row(db: Session, page: models.BeautyPage, day: date) -> models.WorkingDay | None:
    stmt = (
        select(models.WorkingDay)
        .where(models.WorkingDay.beauty_page_id == page.id, models.WorkingDay.day == day)
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalar_one_or_none()


def list_working_days(
    db: Session, page: models.BeautyPage, start: date, end: date
) -> list[models.WorkingDay]:
    stmt = (
        select(models.WorkingDay)
        .where(
            models.WorkingDay.beauty_page_id == page.id,
            models.WorkingDay.day >= start,
            models.WorkingDay.day <= end,
        )
        .order_by(models.WorkingDay.day.asc())
    )
    return db.execute(stmt).scalars().all()


def _day_appointment_rows(db: Session, page: models.BeautyPage, day: date) -> list[models.Appointment]:
    stmt = (
        select(models.Appointment)
        .where(models.Appointment.beauty_page_id == page.id, models.Appointment.day == day)
        .order_by(models.Appointment.start_time.asc())
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).scalars().all()


def _break_rows(breaks: tuple[TimeRange, ...]) -> list[models.WorkingDayBreak]:
    return [
        models.WorkingDayBreak(start_time=format_time(b.start), end_time=format_time(b.end))
        for b in breaks
    ]


def upsert_working_day(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    day: date,
    start,
    end,
    breaks=(),
) -> models.WorkingDay:
    """Create or replace one day's hours.

    Existing active appointments must still fit the new hours, otherwise the
    change is refused and nothing is written.
    """
    require_staff(db, page, actor)
    candidate = WorkingDay(
        date=day,
        range=TimeRange.of(start, end),
        breaks=tuple(TimeRange.of(s, e) for s, e in breaks),
    )

    with _logged_rejection(db, "upsert_working_day", page_id=page.id, date=day.isoformat()):
        snapshot = load_day_snapshot(db, page, day)
        for appointment in snapshot.appointments:
            if not appointment.occupies_calendar:
                continue
            check = is_within_working_hours(day, appointment.start, appointment.end, [candidate])
            if not check.ok:
                raise type(check.reason)(
                    f"{appointment.client_name}'s appointment at {appointment.start} "
                    f"would no longer fit: {check.reason}",
                    appointment_id=appointment.id,
                )

        row = snapshot.working_day_row
        if row is None:
            row = models.WorkingDay(beauty_page_id=page.id, day=day, version=0)
            db.add(row)
        else:
            claim_day(db, snapshot)
        row.start_time = format_time(candidate.range.start)
        row.end_time = format_time(candidate.range.end)
        row.breaks = _break_rows(candidate.breaks)

    try:
        db.commit()
    except IntegrityError as exc:
        # another writer created the same day first
        db.rollback()
        raise SlotTaken("Working hours for this day were just changed, reload and try again") from exc
    db.refresh(row)
    logger.info("working_day_saved", page_id=page.id, date=day.isoformat())
    return row


def delete_working_day(db: Session, page: models.BeautyPage, actor: Actor, day: date) -> None:
    require_staff(db, page, actor)
    with _logged_rejection(db, "delete_working_day", page_id=page.id, date=day.isoformat()):
        snapshot = load_day_snapshot(db, page, day)
        if snapshot.working_day_row is None:
            raise NotFound("Working day not found")
        if any(a.occupies_calendar for a in snapshot.appointments):
            raise Conflict("This day still has active appointments")
        claim_day(db, snapshot)
        db.delete(snapshot.working_day_row)
    db.commit()


def apply_schedule_pattern(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    kind: str,
    start,
    end,
    start_date: date | None = None,
    end_date: date | None = None,
    breaks=(),
    days_on: int | None = None,
    days_off: int | None = None,
    weekdays=None,
    dates=None,
    skip_holidays: bool = False,
    holidays_country: str | None = None,
) -> list[models.WorkingDay]:
    """Generate working days from a pattern. Days that already exist are kept."""
    require_staff(db, page, actor)
    hours = WorkingHours(
        range=TimeRange.of(start, end),
        breaks=tuple(TimeRange.of(s, e) for s, e in breaks),
    )
    country = None
    if skip_holidays:
        country = (holidays_country or settings.HOLIDAYS_COUNTRY or "").strip().upper()
        if not country:
            raise InvalidFormat("a holidays country is required to skip holidays")

    if kind == "bulk":
        if not dates:
            raise InvalidFormat("bulk pattern needs at least one date")
        generated = bulk(dates, hours, country)
    else:
        if start_date is None or end_date is None:
            raise InvalidFormat("pattern needs a start and an end date")
        if (end_date - start_date).days >= MAX_PATTERN_DAYS:
            raise InvalidFormat(f"patterns can cover at most {MAX_PATTERN_DAYS} days")
        if kind == "rotation":
            generated = rotation(start_date, end_date, int(days_on or 0), int(days_off or 0), hours, country)
        elif kind == "weekly":
            generated = weekly(start_date, end_date, weekdays or [], hours, country)
        else:
            raise InvalidFormat(f"unknown schedule pattern: {kind!r}")

    if not generated:
        return []
    existing = db.execute(
        select(models.WorkingDay.day).where(
            models.WorkingDay.beauty_page_id == page.id,
            models.WorkingDay.day.in_([wd.date for wd in generated]),
        )
    ).scalars().all()

    rows = []
    for working_day in filter_existing(generated, existing):
        row = models.WorkingDay(
            beauty_page_id=page.id,
            day=working_day.date,
            start_time=format_time(working_day.range.start),
            end_time=format_time(working_day.range.end),
            version=0,
        )
        row.breaks = _break_rows(working_day.breaks)
        db.add(row)
        rows.append(row)
    db.commit()
    for row in rows:
        db.refresh(row)
    logger.info("schedule_pattern_applied", page_id=page.id, kind=kind, created=len(rows))
    return rows


# Day snapshot and compare-and-swap commit


@dataclass
class DaySnapshot:
    """What a placement was validated against."""

    day: date
    working_day_row: models.WorkingDay | None
    version: int | None
    working_days: list[WorkingDay] = field(default_factory=list)
    appointments: list[Appointment] = field(default_factory=list)


def load_day_snapshot(db: Session, page: models.BeautyPage, day: date) -> DaySnapshot:
    row = get_working_day_row(db, page, day)
    appointments = [to_core_appointment(a) for a in _day_appointment_rows(db, page, day)]
    if row is None:
        return DaySnapshot(day=day, working_day_row=None, version=None, appointments=appointments)
    return DaySnapshot(
        day=day,
        working_day_row=row,
        version=int(row.version or 0),
        working_days=[to_core_working_day(row)],
        appointments=appointments,
    )


def claim_day(db: Session, snapshot: DaySnapshot) -> None:
    """Bump the day's version if nobody changed it since ``snapshot``.

    Losing the race means the snapshot is stale; the unit of work is rolled
    back and ``SlotTaken`` tells the caller to re-offer availability.
    """
    if snapshot.working_day_row is None:
        raise DataStoreError("cannot claim a day without working hours")
    result = db.execute(
        update(models.WorkingDay)
        .where(
            models.WorkingDay.id == snapshot.working_day_row.id,
            models.WorkingDay.version == snapshot.version,
        )
        .values(version=models.WorkingDay.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.info("slot_taken", working_day_id=snapshot.working_day_row.id, date=snapshot.day.isoformat())
        raise SlotTaken()


def validate_placement_for(
    db: Session,
    page: models.BeautyPage,
    day: date,
    start,
    end,
    appointment_id: str | None = None,
) -> PlacementResult:
    """Advisory check used by drag previews; commits re-validate."""
    snapshot = load_day_snapshot(db, page, day)
    proposal = ProposedPlacement(
        appointment_id=appointment_id,
        date=day,
        start=as_time_of_day(start),
        end=as_time_of_day(end),
    )
    return preview(proposal, snapshot.appointments, snapshot.working_days)


# Promotions


def create_promotion(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    service_id: str,
    kind: str,
    discount_percentage: int,
    starts_at: date | None = None,
    ends_at: date | None = None,
    slot_date: date | None = None,
    slot_start=None,
    recurring_start=None,
    recurring_days=None,
    recurring_valid_until: date | None = None,
) -> models.Promotion:
    require_staff(db, page, actor)
    service = get_services_for_selection(db, page, [service_id])[0]
    try:
        promo_type = PromotionType(kind)
    except ValueError as exc:
        raise InvalidFormat(f"unknown promotion type: {kind!r}") from exc
    if not 0 < int(discount_percentage) < 100:
        raise InvalidFormat("discount percentage must be between 1 and 99")

    row = models.Promotion(
        beauty_page_id=page.id,
        service_id=service.id,
        type=promo_type.value,
        discount_percentage=int(discount_percentage),
        original_price_cents=service.price_cents,
        discounted_price_cents=discounted_price(service.price_cents, discount_percentage),
        status=PromotionStatus.ACTIVE.value,
    )
    if promo_type == PromotionType.SALE:
        if starts_at and ends_at and ends_at < starts_at:
            raise InvalidFormat("sale ends before it starts")
        row.starts_at, row.ends_at = starts_at, ends_at
    elif promo_type == PromotionType.SLOT:
        if slot_date is None or slot_start is None:
            raise InvalidFormat("slot promotion needs a date and a start time")
        start_at = as_time_of_day(slot_start)
        if start_at.minutes + service.duration_minutes >= MINUTES_PER_DAY:
            raise InvalidFormat("slot promotion would run past midnight")
        row.slot_date = slot_date
        row.slot_start_time = format_time(start_at)
        row.slot_end_time = format_time(start_at.plus(service.duration_minutes))
    else:
        if recurring_start is None:
            raise InvalidFormat("time promotion needs a start time")
        row.recurring_start_time = format_time(as_time_of_day(recurring_start))
        if recurring_days is not None:
            days = sorted({int(d) for d in recurring_days})
            if not days or not set(days) <= set(range(7)):
                raise InvalidFormat("weekdays must be numbers 0 (Sunday) to 6 (Saturday)")
            row.recurring_days = json.dumps(days)
        row.recurring_valid_until = recurring_valid_until

    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def list_promotions(db: Session, page: models.BeautyPage) -> list[Promotion]:
    rows = db.execute(
        select(models.Promotion)
        .where(models.Promotion.beauty_page_id == page.id)
        .order_by(models.Promotion.created_at.asc(), models.Promotion.id.asc())
    ).scalars().all()
    return [to_core_promotion(row) for row in rows]


def find_best_promotion(
    db: Session,
    page: models.BeautyPage,
    service_id: str,
    day: date,
    start,
    today: date | None = None,
) -> Promotion | None:
    if today is None:
        today = datetime.now(page_timezone(page)).date()
    rows = db.execute(
        select(models.Promotion)
        .where(
            models.Promotion.beauty_page_id == page.id,
            models.Promotion.service_id == service_id,
            models.Promotion.status == PromotionStatus.ACTIVE.value,
        )
        .order_by(models.Promotion.created_at.asc(), models.Promotion.id.asc())
    ).scalars().all()
    return best_promotion([to_core_promotion(r) for r in rows], day, as_time_of_day(start), today)


def _priced_lines(
    db: Session,
    page: models.BeautyPage,
    services: list[models.Service],
    day: date,
    start: TimeOfDay,
    today: date,
) -> tuple[list[models.AppointmentService], list[Promotion]]:
    """One line per service; each is priced at its own start within the chain."""
    lines = []
    applied = []
    line_start = start
    for position, service in enumerate(services):
        promo = find_best_promotion(db, page, service.id, day, line_start, today)
        lines.append(
            models.AppointmentService(
                service_id=service.id,
                service_name=service.name,
                price_cents=service.price_cents,
                discounted_price_cents=(
                    discounted_price(service.price_cents, promo.discount_percentage) if promo else None
                ),
                duration_minutes=service.duration_minutes,
                currency=service.currency,
                promotion_id=promo.id if promo else None,
                position=position,
            )
        )
        if promo is not None:
            applied.append(promo)
        line_start = line_start.plus(service.duration_minutes)
    return lines, applied


def _mark_promotions_booked(db: Session, promotions: list[Promotion]) -> None:
    for promo in promotions:
        if not isinstance(promo, SlotPromotion):
            continue
        booked = mark_slot_booked(promo)
        row = db.get(models.Promotion, promo.id)
        if row is None:
            raise DataStoreError("promotion disappeared while booking", promotion_id=promo.id)
        row.status = booked.status.value


# Cancellation policy and blocklist


def get_cancellation_policy(db: Session, page: models.BeautyPage) -> CancellationPolicy:
    row = _policy_row(db, page)
    if row is None:
        return CancellationPolicy(
            max_cancellations=settings.DEFAULT_MAX_CANCELLATIONS,
            period_days=settings.DEFAULT_PERIOD_DAYS,
            block_duration_days=settings.DEFAULT_BLOCK_DURATION_DAYS,
            no_show_multiplier=settings.DEFAULT_NO_SHOW_MULTIPLIER,
            cancellation_notice_hours=settings.DEFAULT_CANCELLATION_NOTICE_HOURS,
        )
    return CancellationPolicy(
        is_enabled=bool(row.auto_block_enabled),
        max_cancellations=int(row.max_cancellations),
        period_days=int(row.period_days),
        block_duration_days=int(row.block_duration_days),
        no_show_multiplier=float(row.no_show_multiplier),
        allow_client_cancellation=bool(row.allow_client_cancellation),
        cancellation_notice_hours=int(row.cancellation_notice_hours),
    )


def _policy_row(db: Session, page: models.BeautyPage) -> models.CancellationPolicyRow | None:
    return db.execute(
        select(models.CancellationPolicyRow).where(models.CancellationPolicyRow.beauty_page_id == page.id)
    ).scalar_one_or_none()


def update_cancellation_policy(
    db: Session, page: models.BeautyPage, actor: Actor, **fields
) -> CancellationPolicy:
    require_staff(db, page, actor)
    for key in ("max_cancellations", "period_days", "block_duration_days", "cancellation_notice_hours"):
        if fields.get(key) is not None and int(fields[key]) < 0:
            raise InvalidFormat(f"{key} must not be negative")
    if fields.get("no_show_multiplier") is not None and float(fields["no_show_multiplier"]) < 0:
        raise InvalidFormat("no_show_multiplier must not be negative")

    current = get_cancellation_policy(db, page)
    row = _policy_row(db, page)
    if row is None:
        row = models.CancellationPolicyRow(
            beauty_page_id=page.id,
            allow_client_cancellation=current.allow_client_cancellation,
            cancellation_notice_hours=current.cancellation_notice_hours,
            auto_block_enabled=current.is_enabled,
            max_cancellations=current.max_cancellations,
            period_days=current.period_days,
            block_duration_days=current.block_duration_days,
            no_show_multiplier=current.no_show_multiplier,
        )
        db.add(row)
    for key, value in fields.items():
        if value is not None and hasattr(row, key):
            setattr(row, key, value)
    db.commit()
    return get_cancellation_policy(db, page)


def _block_rows(db: Session, page: models.BeautyPage) -> list[models.BlockedClient]:
    return db.execute(
        select(models.BlockedClient)
        .where(models.BlockedClient.beauty_page_id == page.id)
        .order_by(models.BlockedClient.blocked_at.asc(), models.BlockedClient.id.asc())
    ).scalars().all()


def ensure_not_blocked(
    db: Session,
    page: models.BeautyPage,
    client_id: str | None,
    client_phone: str | None,
    now: datetime | None = None,
) -> None:
    blocks = [to_core_block(row) for row in _block_rows(db, page)]
    if find_active_block(blocks, client_id, client_phone, _naive_utc(_aware_utc(now))):
        raise ClientBlocked()


def block_client(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    client_id: str | None = None,
    client_phone: str | None = None,
    duration_days: int | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> models.BlockedClient:
    """Manual block; no ``duration_days`` means permanent."""
    require_staff(db, page, actor)
    client_id = (client_id or "").strip() or None
    phone = normalize_phone(client_phone)
    if not client_id and not phone:
        raise InvalidFormat("client id or phone is required")
    if duration_days is not None and duration_days <= 0:
        raise InvalidFormat("block duration must be positive")

    blocked_at = _naive_utc(_aware_utc(now))
    row = models.BlockedClient(
        beauty_page_id=page.id,
        client_id=client_id,
        client_phone=phone,
        blocked_at=blocked_at,
        blocked_until=blocked_at + timedelta(days=duration_days) if duration_days else None,
        reason=(reason or "").strip() or None,
        source=BlockSource.MANUAL.value,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("client_blocked", page_id=page.id, client_id=client_id, phone=phone, source="manual")
    return row


def unblock_client(db: Session, page: models.BeautyPage, actor: Actor, block_id: str) -> None:
    require_staff(db, page, actor)
    row = db.get(models.BlockedClient, block_id)
    if row is None or row.beauty_page_id != page.id:
        raise NotFound("Block not found")
    db.delete(row)
    db.commit()
    logger.info("client_unblocked", page_id=page.id, block_id=block_id)


def list_blocked_clients(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    active_only: bool = True,
    now: datetime | None = None,
) -> list[models.BlockedClient]:
    require_staff(db, page, actor)
    rows = _block_rows(db, page)
    if not active_only:
        return rows
    at = _naive_utc(_aware_utc(now))
    return [row for row in rows if to_core_block(row).is_active(at)]


def _client_history(
    db: Session, page: models.BeautyPage, client_id: str | None, client_phone: str | None
) -> list[HistoryEvent]:
    stmt = (
        select(models.AppointmentStatusEvent, models.Appointment)
        .join(models.Appointment, models.AppointmentStatusEvent.appointment_id == models.Appointment.id)
        .where(
            models.AppointmentStatusEvent.beauty_page_id == page.id,
            or_(
                models.AppointmentStatusEvent.action == "client_cancel",
                models.AppointmentStatusEvent.to_status == AppointmentStatus.NO_SHOW.value,
            ),
        )
    )
    if client_id:
        stmt = stmt.where(models.Appointment.client_id == client_id)
    phone = normalize_phone(client_phone)

    history = []
    for event, appointment in db.execute(stmt).all():
        if not client_id and normalize_phone(appointment.client_phone) != phone:
            continue
        kind = (
            HistoryKind.NO_SHOW
            if event.to_status == AppointmentStatus.NO_SHOW.value
            else HistoryKind.CANCELLATION
        )
        history.append(HistoryEvent(kind=kind, occurred_at=event.created_at))
    return history


def _apply_auto_block(
    db: Session, page: models.BeautyPage, appointment: models.Appointment, now: datetime
) -> models.BlockedClient | None:
    client_id = appointment.client_id
    phone = appointment.client_phone
    if not client_id and not normalize_phone(phone):
        return None

    policy = get_cancellation_policy(db, page)
    at = _naive_utc(now)
    decision = evaluate_block_trigger(_client_history(db, page, client_id, phone), policy, at)
    if not decision.triggered:
        return None

    rows = _block_rows(db, page)
    blocks = [to_core_block(row) for row in rows]
    existing = find_active_block(blocks, client_id, phone, at)
    merged = merge_block(existing, decision, client_id, phone, at)
    if merged is None:
        return None

    row = None
    if existing is not None:
        row = next(r for r, b in zip(rows, blocks) if b is existing)
        row.blocked_until = merged.blocked_until
        row.no_show_count = merged.no_show_count
    else:
        row = models.BlockedClient(
            beauty_page_id=page.id,
            client_id=merged.client_id,
            client_phone=merged.client_phone,
            blocked_at=merged.blocked_at,
            blocked_until=merged.blocked_until,
            source=merged.source.value,
            no_show_count=merged.no_show_count,
            reason=(
                f"{decision.cancellations} cancellations and {decision.no_shows} no-shows "
                f"in {policy.period_days} days"
            ),
        )
        db.add(row)
    logger.info(
        "client_auto_blocked",
        page_id=page.id,
        client_id=client_id,
        phone=phone,
        weighted_count=decision.weighted_count,
        blocked_until=merged.blocked_until.isoformat() if merged.blocked_until else None,
    )
    return row


# Appointments


def get_appointment(db: Session, page: models.BeautyPage, appointment_id: str) -> models.Appointment:
    row = db.get(models.Appointment, appointment_id, populate_existing=True)
    if row is None or row.beauty_page_id != page.id:
        raise NotFound("Appointment not found")
    return row


def get_appointment_for_actor(
    db: Session, page: models.BeautyPage, actor: Actor, appointment_id: str
) -> models.Appointment:
    row = get_appointment(db, page, appointment_id)
    if actor.is_staff:
        require_staff(db, page, actor)
    elif not actor.user_id or actor.user_id != row.client_id:
        raise NotAllowed("You can only see your own appointments")
    return row


def list_appointments(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    start: date | None = None,
    end: date | None = None,
    status: str | None = None,
) -> list[models.Appointment]:
    stmt = select(models.Appointment).where(models.Appointment.beauty_page_id == page.id)
    if actor.is_staff:
        require_staff(db, page, actor)
    elif actor.user_id:
        stmt = stmt.where(models.Appointment.client_id == actor.user_id)
    else:
        raise NotAllowed("Sign in to see your appointments")
    if start is not None:
        stmt = stmt.where(models.Appointment.day >= start)
    if end is not None:
        stmt = stmt.where(models.Appointment.day <= end)
    if status:
        stmt = stmt.where(models.Appointment.status == AppointmentStatus.parse(status).value)
    stmt = stmt.order_by(models.Appointment.day.asc(), models.Appointment.start_time.asc())
    return db.execute(stmt).scalars().all()


def list_status_events(
    db: Session, page: models.BeautyPage, appointment_id: str
) -> list[models.AppointmentStatusEvent]:
    stmt = (
        select(models.AppointmentStatusEvent)
        .where(
            models.AppointmentStatusEvent.beauty_page_id == page.id,
            models.AppointmentStatusEvent.appointment_id == appointment_id,
        )
        .order_by(models.AppointmentStatusEvent.created_at.asc(), models.AppointmentStatusEvent.id.asc())
    )
    return db.execute(stmt).scalars().all()


def add_status_event(
    db: Session,
    appointment: models.Appointment,
    from_status: str | None,
    to_status: str,
    action: str,
    actor: Actor,
    created_at: datetime,
    note: str | None = None,
) -> models.AppointmentStatusEvent:
    event = models.AppointmentStatusEvent(
        beauty_page_id=appointment.beauty_page_id,
        appointment_id=appointment.id,
        created_at=created_at,
        from_status=from_status,
        to_status=to_status,
        action=action,
        actor=_actor_label(actor),
        note=note,
    )
    db.add(event)
    return event


def _end_for(start: TimeOfDay, duration_minutes: int) -> TimeOfDay:
    if start.minutes + duration_minutes >= MINUTES_PER_DAY:
        raise OutsideWorkingHours("Appointment would run past midnight")
    return start.plus(duration_minutes)


def _ensure_service_windows(services: list[models.Service], start: TimeOfDay, end: TimeOfDay) -> None:
    for service in services:
        window = _service_window(service)
        if window is not None and not (window.start <= start and end <= window.end):
            raise OutsideWorkingHours(f"{service.name} can only be booked between {window.start} and {window.end}")


def _book(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    day: date,
    start: TimeOfDay,
    services: list[models.Service],
    totals: Totals,
    client_id: str | None,
    client_name: str,
    client_phone: str | None,
    client_email: str | None,
    client_notes: str | None,
    is_quick_booking: bool,
    now: datetime,
) -> models.Appointment:
    end = _end_for(start, totals.duration_minutes)
    snapshot = load_day_snapshot(db, page, day)
    proposal = ProposedPlacement(appointment_id=None, date=day, start=start, end=end)
    commit_proposal(proposal, snapshot.appointments, snapshot.working_days)

    today = now.astimezone(page_timezone(page)).date()
    lines, applied = _priced_lines(db, page, services, day, start, today)
    status = initial_status(actor, bool(page.auto_confirm))

    claim_day(db, snapshot)
    appointment = models.Appointment(
        beauty_page_id=page.id,
        day=day,
        start_time=format_time(start),
        end_time=format_time(end),
        status=status.value,
        client_id=client_id,
        client_name=client_name,
        client_phone=client_phone,
        client_email=client_email,
        client_notes=client_notes,
        service_id=services[0].id if services else None,
        service_name=" + ".join(s.name for s in services),
        service_price_cents=sum(
            line.discounted_price_cents if line.discounted_price_cents is not None else line.price_cents
            for line in lines
        ),
        service_duration_minutes=totals.duration_minutes,
        service_currency=totals.currency,
        is_quick_booking=is_quick_booking,
        promotion_id=applied[0].id if applied else None,
        created_at=_naive_utc(now),
    )
    appointment.lines = lines
    db.add(appointment)
    db.flush()
    add_status_event(db, appointment, None, status.value, "created", actor, _naive_utc(now))
    _mark_promotions_booked(db, applied)
    return appointment


def create_booking(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    day: date,
    start,
    service_ids: list[str],
    client_name: str,
    client_phone: str | None = None,
    client_email: str | None = None,
    client_notes: str | None = None,
    now: datetime | None = None,
) -> models.Appointment:
    """Client or guest booking of one or more services back to back.

    Clients go through the blocklist, the page's booking window and each
    service's own hours; staff booking on behalf of a client skip those.
    """
    now = _aware_utc(now)
    start = as_time_of_day(start)
    is_client = actor.role == ActorRole.CLIENT
    if actor.is_staff:
        require_staff(db, page, actor)
    client_id = actor.user_id if is_client else None
    if is_client and not client_id and not normalize_phone(client_phone):
        raise InvalidFormat("Guests must leave a phone number")

    with _logged_rejection(db, "create_booking", page_id=page.id, date=day.isoformat(), start=str(start)):
        services = get_services_for_selection(db, page, service_ids)
        totals = compute_totals([to_core_service(s) for s in services])
        if is_client:
            ensure_not_blocked(db, page, client_id, client_phone, now)
            check_booking_window(combine(day, start, page_timezone(page)), now, booking_settings(page))
            _ensure_service_windows(services, start, _end_for(start, totals.duration_minutes))
        appointment = _book(
            db,
            page,
            actor,
            day,
            start,
            services,
            totals,
            client_id=client_id,
            client_name=client_name.strip(),
            client_phone=client_phone,
            client_email=client_email,
            client_notes=client_notes,
            is_quick_booking=False,
            now=now,
        )
    db.commit()
    db.refresh(appointment)
    logger.info(
        "booking_created",
        page_id=page.id,
        appointment_id=appointment.id,
        status=appointment.status,
        client_phone=client_phone,
    )
    return appointment


def create_quick_booking(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    day: date,
    start,
    service_ids: list[str] | None = None,
    duration_minutes: int | None = None,
    client_name: str | None = None,
    client_phone: str | None = None,
    client_notes: str | None = None,
    now: datetime | None = None,
) -> models.Appointment:
    """Creator adds an appointment straight from the calendar, confirmed."""
    require_staff(db, page, actor)
    now = _aware_utc(now)
    start = as_time_of_day(start)

    with _logged_rejection(db, "create_quick_booking", page_id=page.id, date=day.isoformat(), start=str(start)):
        if service_ids:
            services = get_services_for_selection(db, page, service_ids)
            totals = compute_totals([to_core_service(s) for s in services])
        elif duration_minutes:
            services = []
            totals = Totals(price_cents=0, duration_minutes=int(duration_minutes), currency=page.currency)
        else:
            raise EmptySelection("Pick a service or set a duration")
        end = _end_for(start, totals.duration_minutes)
        require_min_duration(start, end, settings.DEFAULT_MIN_DURATION_MINUTES)
        appointment = _book(
            db,
            page,
            actor,
            day,
            start,
            services,
            totals,
            client_id=None,
            client_name=(client_name or "").strip() or WALK_IN_CLIENT_NAME,
            client_phone=client_phone,
            client_email=None,
            client_notes=client_notes,
            is_quick_booking=True,
            now=now,
        )
    db.commit()
    db.refresh(appointment)
    logger.info("quick_booking_created", page_id=page.id, appointment_id=appointment.id)
    return appointment


def reschedule_appointment(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    appointment_id: str,
    day: date,
    start,
    end=None,
    min_duration: int | None = None,
    now: datetime | None = None,
) -> models.Appointment:
    """Move an appointment; without ``end`` the original duration is kept."""
    require_staff(db, page, actor)
    now = _aware_utc(now)
    row = get_appointment(db, page, appointment_id)
    current = to_core_appointment(row)
    start = as_time_of_day(start)

    with _logged_rejection(db, "reschedule", page_id=page.id, appointment_id=row.id):
        ensure_can_reschedule(current)
        if end is None:
            moved = dragged_times(current.start, current.end, start)
            if moved is None:
                raise OutsideWorkingHours("Appointment would run past midnight")
            start, end = moved
        else:
            end = as_time_of_day(end)
            require_min_duration(start, end, min_duration or settings.DEFAULT_MIN_DURATION_MINUTES)

        snapshot = load_day_snapshot(db, page, day)
        proposal = ProposedPlacement(appointment_id=row.id, date=day, start=start, end=end)
        placement = commit_proposal(proposal, snapshot.appointments, snapshot.working_days)
        claim_day(db, snapshot)

        note = f"{row.day.isoformat()} {row.start_time}-{row.end_time} -> {day.isoformat()} {start}-{end}"
        row.day = placement.date
        row.start_time = format_time(placement.start)
        row.end_time = format_time(placement.end)
        add_status_event(db, row, row.status, row.status, "rescheduled", actor, _naive_utc(now), note=note)
    db.commit()
    db.refresh(row)
    logger.info("appointment_rescheduled", page_id=page.id, appointment_id=row.id, note=note)
    return row


def resize_appointment(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    appointment_id: str,
    start,
    end,
    min_duration: int | None = None,
    now: datetime | None = None,
) -> models.Appointment:
    row = get_appointment(db, page, appointment_id)
    return reschedule_appointment(
        db, page, actor, appointment_id, row.day, start, end, min_duration=min_duration, now=now
    )


def _staff_appointment(
    db: Session, page: models.BeautyPage, actor: Actor, appointment_id: str
) -> tuple[models.Appointment, Appointment]:
    require_staff(db, page, actor)
    row = get_appointment(db, page, appointment_id)
    return row, to_core_appointment(row)


def _line_price(line: models.AppointmentService) -> int:
    return line.discounted_price_cents if line.discounted_price_cents is not None else line.price_cents


def _place_changed_times(
    db: Session, page: models.BeautyPage, row: models.Appointment, start: TimeOfDay, end: TimeOfDay
) -> CommittedPlacement:
    """Re-validate the new times on the appointment's own day and claim it."""
    snapshot = load_day_snapshot(db, page, row.day)
    proposal = ProposedPlacement(appointment_id=row.id, date=row.day, start=start, end=end)
    placement = commit_proposal(proposal, snapshot.appointments, snapshot.working_days)
    claim_day(db, snapshot)
    row.start_time = format_time(placement.start)
    row.end_time = format_time(placement.end)
    return placement


def check_service_addition(
    db: Session, page: models.BeautyPage, actor: Actor, appointment_id: str, service_id: str
) -> dict:
    """Where the appointment would end with one more service, and whether that fits."""
    row, current = _staff_appointment(db, page, actor, appointment_id)
    ensure_can_reschedule(current)
    service = get_services_for_selection(db, page, [service_id])[0]
    new_end = _end_for(current.end, service.duration_minutes)
    snapshot = load_day_snapshot(db, page, row.day)
    result = preview(
        ProposedPlacement(appointment_id=row.id, date=row.day, start=current.start, end=new_end),
        snapshot.appointments,
        snapshot.working_days,
    )
    conflicting = getattr(result.reason, "appointment", None)
    return {
        "appointment_id": row.id,
        "service_name": service.name,
        "service_duration_minutes": service.duration_minutes,
        "new_end": format_time(new_end),
        "valid": result.valid,
        "reason": result.message,
        "code": result.reason.code if result.reason else None,
        "conflicting_appointment_id": conflicting.id if conflicting else None,
    }


def add_service_to_appointment(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    appointment_id: str,
    service_id: str,
    extend_duration: bool = True,
    now: datetime | None = None,
) -> models.Appointment:
    """Add a service line; with ``extend_duration`` the end moves by its duration."""
    now = _aware_utc(now)
    row, current = _staff_appointment(db, page, actor, appointment_id)

    with _logged_rejection(db, "add_service", page_id=page.id, appointment_id=row.id):
        ensure_can_reschedule(current)
        service = get_services_for_selection(db, page, [service_id])[0]
        if row.service_currency and service.currency != row.service_currency:
            raise MixedCurrencies()
        if extend_duration:
            _place_changed_times(db, page, row, current.start, _end_for(current.end, service.duration_minutes))
            row.service_duration_minutes = int(row.service_duration_minutes or 0) + service.duration_minutes

        row.lines.append(
            models.AppointmentService(
                service_id=service.id,
                service_name=service.name,
                price_cents=service.price_cents,
                duration_minutes=service.duration_minutes,
                currency=service.currency,
                position=len(row.lines),
            )
        )
        row.service_price_cents = int(row.service_price_cents or 0) + service.price_cents
        row.service_currency = row.service_currency or service.currency
        row.service_id = row.service_id or service.id
        row.service_name = " + ".join(line.service_name for line in row.lines)
        add_status_event(
            db, row, row.status, row.status, "service_added", actor, _naive_utc(now), note=service.name
        )
    db.commit()
    db.refresh(row)
    logger.info("appointment_service_added", page_id=page.id, appointment_id=row.id, service_id=service.id)
    return row


def remove_service_from_appointment(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    appointment_id: str,
    line_id: str,
    now: datetime | None = None,
) -> models.Appointment:
    """Drop a service line; the end and the price shrink with it."""
    now = _aware_utc(now)
    row, current = _staff_appointment(db, page, actor, appointment_id)

    with _logged_rejection(db, "remove_service", page_id=page.id, appointment_id=row.id):
        ensure_can_reschedule(current)
        line = next((line for line in row.lines if line.id == line_id), None)
        if line is None:
            raise NotFound("Service is not part of this appointment")
        if len(row.lines) <= 1:
            raise CannotModify("The last service of an appointment cannot be removed")

        new_end = current.end.minutes - line.duration_minutes
        if new_end <= current.start.minutes:
            raise BelowMinimumDuration("Removing this service would leave no time for the rest")
        end = TimeOfDay(new_end)
        require_min_duration(current.start, end, settings.DEFAULT_MIN_DURATION_MINUTES)
        _place_changed_times(db, page, row, current.start, end)

        row.service_price_cents = max(0, int(row.service_price_cents or 0) - _line_price(line))
        row.service_duration_minutes = max(0, int(row.service_duration_minutes or 0) - line.duration_minutes)
        row.lines.remove(line)
        for position, remaining in enumerate(row.lines):
            remaining.position = position
        row.service_id = row.lines[0].service_id
        row.service_name = " + ".join(remaining.service_name for remaining in row.lines)
        add_status_event(
            db, row, row.status, row.status, "service_removed", actor, _naive_utc(now), note=line.service_name
        )
    db.commit()
    db.refresh(row)
    logger.info("appointment_service_removed", page_id=page.id, appointment_id=row.id, line_id=line_id)
    return row


def start_appointment_early(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    appointment_id: str,
    now: datetime | None = None,
) -> models.Appointment:
    """Client arrived early: start now and keep the booked length."""
    now = _aware_utc(now)
    row, current = _staff_appointment(db, page, actor, appointment_id)
    local_now = now.astimezone(page_timezone(page))

    with _logged_rejection(db, "start_early", page_id=page.id, appointment_id=row.id):
        if current.status != AppointmentStatus.CONFIRMED:
            raise CannotModify("Only confirmed appointments can start early")
        if local_now.date() != current.date:
            raise CannotModify("Only today's appointments can start early")
        start = TimeOfDay(local_now.hour * 60 + local_now.minute)
        if start >= current.start:
            raise CannotModify("The appointment has already started")
        end = _end_for(start, current.end.minutes - current.start.minutes)
        note = f"{row.start_time}-{row.end_time} -> {format_time(start)}-{format_time(end)}"
        _place_changed_times(db, page, row, start, end)
        add_status_event(db, row, row.status, row.status, "started_early", actor, _naive_utc(now), note=note)
    db.commit()
    db.refresh(row)
    logger.info("appointment_started_early", page_id=page.id, appointment_id=row.id, note=note)
    return row


def update_creator_notes(
    db: Session, page: models.BeautyPage, actor: Actor, appointment_id: str, notes: str | None
) -> models.Appointment:
    row, _ = _staff_appointment(db, page, actor, appointment_id)
    clean = (notes or "").strip()
    if len(clean) > CREATOR_NOTES_MAX_LENGTH:
        raise InvalidFormat(f"notes can be at most {CREATOR_NOTES_MAX_LENGTH} characters")
    row.creator_notes = clean or None
    db.commit()
    db.refresh(row)
    return row


def client_cancellation_status(
    db: Session, page: models.BeautyPage, actor: Actor, appointment_id: str, now: datetime | None = None
) -> dict:
    now = _aware_utc(now)
    row = get_appointment_for_actor(db, page, actor, appointment_id)
    current = to_core_appointment(row)
    policy = get_cancellation_policy(db, page)
    start_at = combine(current.date, current.start, page_timezone(page))
    allowed = (
        policy.allow_client_cancellation
        and AppointmentStatus.CANCELLED in allowed_targets(current.status)
        and can_cancel(start_at, policy.cancellation_notice_hours, now)
    )
    return {
        "appointment_id": row.id,
        "can_cancel": bool(allowed),
        "notice_hours": policy.cancellation_notice_hours,
        "deadline": start_at - timedelta(hours=policy.cancellation_notice_hours),
    }


def change_status(
    db: Session,
    page: models.BeautyPage,
    actor: Actor,
    appointment_id: str,
    new_status: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> models.Appointment:
    now = _aware_utc(now)
    if actor.is_staff:
        require_staff(db, page, actor)
    row = get_appointment(db, page, appointment_id)
    current = to_core_appointment(row)

    with _logged_rejection(db, "change_status", page_id=page.id, appointment_id=row.id):
        updated = transition(current, new_status, actor, reason=reason, now=_naive_utc(now))
        client_cancel = updated.cancelled_by == CancelledBy.CLIENT
        if client_cancel:
            policy = get_cancellation_policy(db, page)
            if not policy.allow_client_cancellation:
                raise NotAllowed("This page does not accept cancellations from clients")
            start_at = combine(current.date, current.start, page_timezone(page))
            if not can_cancel(start_at, policy.cancellation_notice_hours, now):
                raise CancellationWindowClosed(
                    f"Appointments can be cancelled up to {policy.cancellation_notice_hours} hours before they start",
                    notice_hours=policy.cancellation_notice_hours,
                )

    row.status = updated.status.value
    if updated.status == AppointmentStatus.CANCELLED:
        row.cancelled_by = updated.cancelled_by.value if updated.cancelled_by else None
        row.cancellation_reason = updated.cancellation_reason
        row.cancelled_at = updated.cancelled_at
    add_status_event(
        db,
        row,
        current.status.value,
        updated.status.value,
        "client_cancel" if client_cancel else "status_update",
        actor,
        _naive_utc(now),
        note=updated.cancellation_reason,
    )
    if client_cancel or updated.status == AppointmentStatus.NO_SHOW:
        db.flush()
        _apply_auto_block(db, page, row, now)
    db.commit()
    db.refresh(row)
    logger.info(
        "appointment_status_changed",
        page_id=page.id,
        appointment_id=row.id,
        from_status=current.status.value,
        to_status=row.status,
        released=updated.status in RELEASED_STATUSES,
    )
    return row


# Slots


def _earliest_start(local_now: datetime, day: date, notice_hours: int) -> int | None:
    earliest_at = local_now + timedelta(hours=notice_hours)
    if earliest_at.date() < day:
        return None
    if earliest_at.date() > day:
        return MINUTES_PER_DAY
    minutes = earliest_at.hour * 60 + earliest_at.minute
    if earliest_at.second or earliest_at.microsecond:
        minutes += 1
    return minutes


def list_available_slots(
    db: Session,
    page: models.BeautyPage,
    day: date,
    service_ids: list[str],
    now: datetime | None = None,
    include_unavailable: bool = False,
) -> list[Slot]:
    now = _aware_utc(now)
    services = get_services_for_selection(db, page, service_ids)
    totals = compute_totals([to_core_service(s) for s in services])
    cfg = booking_settings(page)
    local_now = now.astimezone(page_timezone(page))
    if day < local_now.date() or is_too_far_ahead(day, local_now.date(), cfg):
        return []

    snapshot = load_day_snapshot(db, page, day)
    slots = generate_slots(
        snapshot.working_days[0] if snapshot.working_days else None,
        snapshot.appointments,
        totals.duration_minutes,
        cfg.slot_interval_minutes,
        earliest_start=_earliest_start(local_now, day, cfg.min_booking_notice_hours),
        service_windows=[_service_window(s) for s in services],
    )
    return slots if include_unavailable else available_only(slots)


