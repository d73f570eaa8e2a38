from datetime import date, datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import services
from .core.domain import Actor, ActorRole
from .core.errors import (
    BookingError,
    ClientBlocked,
    Conflict,
    DataStoreError,
    InvalidFormat,
    NotAllowed,
    NotFound,
)
from .core.promotions import SalePromotion, SlotPromotion, TimePromotion, effective_status
from .core.time_utils import format_time
from .db import get_db
from .models import Appointment, BeautyPage, BlockedClient, WorkingDay
from .schemas import (
    AddServiceRequest,
    AppointmentLineOut,
    AppointmentOut,
    BlockCreate,
    BlockOut,
    BookingCreate,
    BreakOut,
    CanCancelOut,
    CancellationPolicyIn,
    CancellationPolicyOut,
    CreatorNotesUpdate,
    PageAdminCreate,
    PageAdminOut,
    PageCreate,
    PageOut,
    PageSettingsUpdate,
    PlacementCheck,
    PlacementOut,
    PromotionCreate,
    PromotionOut,
    QuickBookingCreate,
    RescheduleRequest,
    ResizeRequest,
    SchedulePatternCreate,
    ServiceAdditionOut,
    ServiceCreate,
    ServiceOut,
    SlotOut,
    StatusEventOut,
    StatusUpdate,
    TotalsOut,
    TotalsRequest,
    WorkingDayOut,
    WorkingDayUpsert,
)

logger = structlog.get_logger("beautypage.api")

router = APIRouter(prefix="/api")


def status_code_for(exc: BookingError) -> int:
    if isinstance(exc, DataStoreError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if isinstance(exc, NotFound):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (NotAllowed, ClientBlocked)):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, Conflict):
        return status.HTTP_409_CONFLICT
    return status.HTTP_400_BAD_REQUEST


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    code = status_code_for(exc)
    if code >= 500:
        logger.error("booking_internal_error", code=exc.code, error=str(exc), **exc.context)
        return JSONResponse(status_code=code, content={"detail": "Something went wrong", "code": exc.code})
    return JSONResponse(status_code=code, content=exc.as_dict())


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingError, booking_error_handler)


def get_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    raw_role = (x_actor_role or ActorRole.CLIENT.value).strip().lower()
    try:
        role = ActorRole(raw_role)
    except ValueError as exc:
        raise InvalidFormat(f"unknown actor role: {x_actor_role!r}") from exc
    return Actor(role=role, user_id=(x_actor_id or "").strip() or None)


def get_page(slug: str, db: Session = Depends(get_db)) -> BeautyPage:
    return services.get_page_by_slug(db, slug)


def _to_page_out(page: BeautyPage) -> PageOut:
    return PageOut(
        id=page.id,
        slug=page.slug,
        name=page.name,
        owner_id=page.owner_id,
        timezone=page.timezone,
        currency=page.currency,
        slot_interval_minutes=page.slot_interval_minutes,
        auto_confirm=page.auto_confirm,
        min_booking_notice_hours=page.min_booking_notice_hours,
        max_booking_days_ahead=page.max_booking_days_ahead,
    )


def _to_working_day_out(row: WorkingDay) -> WorkingDayOut:
    return WorkingDayOut(
        id=row.id,
        date=row.day,
        start=row.start_time,
        end=row.end_time,
        version=row.version,
        breaks=[BreakOut(start=b.start_time, end=b.end_time) for b in row.breaks],
    )


def _to_appointment_out(row: Appointment, staff_view: bool = False) -> AppointmentOut:
    return AppointmentOut(
        id=row.id,
        date=row.day,
        start=row.start_time,
        end=row.end_time,
        status=row.status,
        client_id=row.client_id,
        client_name=row.client_name,
        client_phone=row.client_phone,
        client_notes=row.client_notes,
        creator_notes=row.creator_notes if staff_view else None,
        service_id=row.service_id,
        service_name=row.service_name,
        service_price_cents=row.service_price_cents,
        service_duration_minutes=row.service_duration_minutes,
        service_currency=row.service_currency,
        cancelled_by=row.cancelled_by,
        cancellation_reason=row.cancellation_reason,
        cancelled_at=row.cancelled_at,
        is_quick_booking=row.is_quick_booking,
        promotion_id=row.promotion_id,
        created_at=row.created_at,
        lines=[
            AppointmentLineOut(
                id=line.id,
                service_id=line.service_id,
                service_name=line.service_name,
                price_cents=line.price_cents,
                discounted_price_cents=line.discounted_price_cents,
                duration_minutes=line.duration_minutes,
                currency=line.currency,
                promotion_id=line.promotion_id,
            )
            for line in row.lines
        ],
    )


def _to_promotion_out(promo, today: date) -> PromotionOut:
    out = PromotionOut(
        id=promo.id,
        service_id=promo.service_id,
        type=promo.type.value,
        discount_percentage=promo.discount_percentage,
        original_price_cents=promo.original_price_cents,
        discounted_price_cents=promo.discounted_price_cents,
        status=effective_status(promo, today).value,
    )
    if isinstance(promo, SalePromotion):
        out.starts_at, out.ends_at = promo.starts_at, promo.ends_at
    elif isinstance(promo, SlotPromotion):
        out.slot_date = promo.slot_date
        out.slot_start = format_time(promo.slot_start) if promo.slot_start else None
        out.slot_end = format_time(promo.slot_end) if promo.slot_end else None
    elif isinstance(promo, TimePromotion):
        out.recurring_start = format_time(promo.recurring_start) if promo.recurring_start else None
        out.recurring_days = sorted(promo.recurring_days) if promo.recurring_days is not None else None
        out.recurring_valid_until = promo.recurring_valid_until
    return out


def _to_block_out(row: BlockedClient) -> BlockOut:
    return BlockOut(
        id=row.id,
        client_id=row.client_id,
        client_phone=row.client_phone,
        blocked_at=row.blocked_at,
        blocked_until=row.blocked_until,
        reason=row.reason,
        source=row.source,
        no_show_count=row.no_show_count,
    )


def _policy_out(policy) -> CancellationPolicyOut:
    return CancellationPolicyOut(
        allow_client_cancellation=policy.allow_client_cancellation,
        cancellation_notice_hours=policy.cancellation_notice_hours,
        auto_block_enabled=policy.is_enabled,
        max_cancellations=policy.max_cancellations,
        period_days=policy.period_days,
        block_duration_days=policy.block_duration_days,
        no_show_multiplier=policy.no_show_multiplier,
    )


def _page_today(page: BeautyPage) -> date:
    return datetime.now(services.page_timezone(page)).date()


# Pages


@router.post("/pages", response_model=PageOut)
def create_page(
    payload: PageCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    page = services.create_page(
        db,
        actor,
        slug=payload.slug,
        name=payload.name,
        timezone_name=payload.timezone,
        currency=payload.currency,
        slot_interval_minutes=payload.slot_interval_minutes,
        auto_confirm=payload.auto_confirm,
        min_booking_notice_hours=payload.min_booking_notice_hours,
        max_booking_days_ahead=payload.max_booking_days_ahead,
    )
    return _to_page_out(page)


@router.get("/pages/{slug}", response_model=PageOut)
def read_page(page: BeautyPage = Depends(get_page)):
    return _to_page_out(page)


@router.patch("/pages/{slug}", response_model=PageOut)
def patch_page(
    payload: PageSettingsUpdate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    page = services.update_page_settings(db, page, actor, **payload.model_dump(exclude_none=True))
    return _to_page_out(page)


@router.post("/pages/{slug}/admins", response_model=PageAdminOut)
def add_admin(
    payload: PageAdminCreate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    admin = services.add_page_admin(db, page, actor, payload.user_id)
    return PageAdminOut(id=admin.id, user_id=admin.user_id, created_at=admin.created_at)


@router.post("/pages/{slug}/services", response_model=ServiceOut)
def add_service(
    payload: ServiceCreate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.create_service(
        db,
        page,
        actor,
        name=payload.name,
        price_cents=payload.price_cents,
        duration_minutes=payload.duration_minutes,
        currency=payload.currency,
        available_from=payload.available_from,
        available_to=payload.available_to,
    )
    return ServiceOut.model_validate(row, from_attributes=True)


@router.get("/pages/{slug}/services", response_model=List[ServiceOut])
def read_services(page: BeautyPage = Depends(get_page), db: Session = Depends(get_db)):
    return [ServiceOut.model_validate(row, from_attributes=True) for row in services.list_services(db, page)]


# Engine contracts


@router.post("/pages/{slug}/validate-placement", response_model=PlacementOut)
def validate_placement(
    payload: PlacementCheck,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
):
    result = services.validate_placement_for(
        db, page, payload.date, payload.start, payload.end, appointment_id=payload.appointment_id
    )
    conflicting = getattr(result.reason, "appointment", None)
    return PlacementOut(
        valid=result.valid,
        reason=result.message,
        code=result.reason.code if result.reason else None,
        conflicting_appointment_id=conflicting.id if conflicting else None,
    )


@router.post("/pages/{slug}/totals", response_model=TotalsOut)
def booking_totals(
    payload: TotalsRequest,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
):
    totals = services.totals_for(db, page, payload.service_ids)
    return TotalsOut(
        price_cents=totals.price_cents,
        duration_minutes=totals.duration_minutes,
        currency=totals.currency,
    )


@router.get("/pages/{slug}/slots", response_model=List[SlotOut])
def available_slots(
    day: date = Query(..., alias="date"),
    service_ids: List[str] = Query(..., alias="service_id"),
    include_unavailable: bool = Query(default=False),
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
):
    slots = services.list_available_slots(
        db, page, day, service_ids, include_unavailable=include_unavailable
    )
    return [SlotOut(**slot.as_dict()) for slot in slots]


# Promotions


@router.post("/pages/{slug}/promotions", response_model=PromotionOut)
def add_promotion(
    payload: PromotionCreate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.create_promotion(
        db,
        page,
        actor,
        service_id=payload.service_id,
        kind=payload.type,
        discount_percentage=payload.discount_percentage,
        starts_at=payload.starts_at,
        ends_at=payload.ends_at,
        slot_date=payload.slot_date,
        slot_start=payload.slot_start,
        recurring_start=payload.recurring_start,
        recurring_days=payload.recurring_days,
        recurring_valid_until=payload.recurring_valid_until,
    )
    return _to_promotion_out(services.to_core_promotion(row), _page_today(page))


@router.get("/pages/{slug}/promotions", response_model=List[PromotionOut])
def read_promotions(page: BeautyPage = Depends(get_page), db: Session = Depends(get_db)):
    today = _page_today(page)
    return [_to_promotion_out(p, today) for p in services.list_promotions(db, page)]


@router.get("/pages/{slug}/promotions/best", response_model=Optional[PromotionOut])
def best_promotion(
    service_id: str = Query(...),
    day: date = Query(..., alias="date"),
    start: str = Query(...),
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
):
    today = _page_today(page)
    promo = services.find_best_promotion(db, page, service_id, day, start, today)
    return _to_promotion_out(promo, today) if promo else None


# Appointments


@router.post("/pages/{slug}/appointments", response_model=AppointmentOut)
def book_appointment(
    payload: BookingCreate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.create_booking(
        db,
        page,
        actor,
        day=payload.date,
        start=payload.start,
        service_ids=payload.service_ids,
        client_name=payload.client_name,
        client_phone=payload.client_phone,
        client_email=payload.client_email,
        client_notes=payload.client_notes,
    )
    return _to_appointment_out(row)


@router.post("/pages/{slug}/appointments/quick", response_model=AppointmentOut)
def quick_book_appointment(
    payload: QuickBookingCreate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.create_quick_booking(
        db,
        page,
        actor,
        day=payload.date,
        start=payload.start,
        service_ids=payload.service_ids,
        duration_minutes=payload.duration_minutes,
        client_name=payload.client_name,
        client_phone=payload.client_phone,
        client_notes=payload.client_notes,
    )
    return _to_appointment_out(row)


@router.get("/pages/{slug}/appointments", response_model=List[AppointmentOut])
def read_appointments(
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    rows = services.list_appointments(db, page, actor, start=start, end=end, status=status_filter)
    return [_to_appointment_out(row, staff_view=actor.is_staff) for row in rows]


@router.get("/pages/{slug}/appointments/{appointment_id}", response_model=AppointmentOut)
def read_appointment(
    appointment_id: str,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.get_appointment_for_actor(db, page, actor, appointment_id)
    return _to_appointment_out(row, staff_view=actor.is_staff)


@router.patch("/pages/{slug}/appointments/{appointment_id}/reschedule", response_model=AppointmentOut)
def reschedule(
    appointment_id: str,
    payload: RescheduleRequest,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.reschedule_appointment(
        db, page, actor, appointment_id, payload.date, payload.start, payload.end
    )
    return _to_appointment_out(row)


@router.patch("/pages/{slug}/appointments/{appointment_id}/resize", response_model=AppointmentOut)
def resize(
    appointment_id: str,
    payload: ResizeRequest,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.resize_appointment(db, page, actor, appointment_id, payload.start, payload.end)
    return _to_appointment_out(row)


@router.get(
    "/pages/{slug}/appointments/{appointment_id}/services/check",
    response_model=ServiceAdditionOut,
)
def check_added_service(
    appointment_id: str,
    service_id: str = Query(),
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return services.check_service_addition(db, page, actor, appointment_id, service_id)


@router.post("/pages/{slug}/appointments/{appointment_id}/services", response_model=AppointmentOut)
def add_service(
    appointment_id: str,
    payload: AddServiceRequest,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.add_service_to_appointment(
        db, page, actor, appointment_id, payload.service_id, extend_duration=payload.extend_duration
    )
    return _to_appointment_out(row, staff_view=True)


@router.delete("/pages/{slug}/appointments/{appointment_id}/services/{line_id}", response_model=AppointmentOut)
def remove_service(
    appointment_id: str,
    line_id: str,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.remove_service_from_appointment(db, page, actor, appointment_id, line_id)
    return _to_appointment_out(row, staff_view=True)


@router.post("/pages/{slug}/appointments/{appointment_id}/start-early", response_model=AppointmentOut)
def start_early(
    appointment_id: str,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return _to_appointment_out(services.start_appointment_early(db, page, actor, appointment_id), staff_view=True)


@router.patch("/pages/{slug}/appointments/{appointment_id}/notes", response_model=AppointmentOut)
def patch_creator_notes(
    appointment_id: str,
    payload: CreatorNotesUpdate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.update_creator_notes(db, page, actor, appointment_id, payload.notes)
    return _to_appointment_out(row, staff_view=True)


@router.patch("/pages/{slug}/appointments/{appointment_id}/status", response_model=AppointmentOut)
def patch_status(
    appointment_id: str,
    payload: StatusUpdate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.change_status(db, page, actor, appointment_id, payload.status, reason=payload.reason)
    return _to_appointment_out(row)


@router.get("/pages/{slug}/appointments/{appointment_id}/status-events", response_model=List[StatusEventOut])
def status_history(
    appointment_id: str,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    services.get_appointment_for_actor(db, page, actor, appointment_id)
    rows = services.list_status_events(db, page, appointment_id)
    return [
        StatusEventOut(
            id=row.id,
            appointment_id=row.appointment_id,
            from_status=row.from_status,
            to_status=row.to_status,
            action=row.action,
            actor=row.actor,
            note=row.note,
            created_at=row.created_at,
        )
        for row in rows
    ]


@router.get("/pages/{slug}/appointments/{appointment_id}/can-cancel", response_model=CanCancelOut)
def can_cancel(
    appointment_id: str,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    return CanCancelOut(**services.client_cancellation_status(db, page, actor, appointment_id))


# Working days


@router.get("/pages/{slug}/working-days", response_model=List[WorkingDayOut])
def read_working_days(
    start: date = Query(...),
    end: date = Query(...),
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
):
    return [_to_working_day_out(row) for row in services.list_working_days(db, page, start, end)]


@router.put("/pages/{slug}/working-days/{day}", response_model=WorkingDayOut)
def put_working_day(
    day: date,
    payload: WorkingDayUpsert,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.upsert_working_day(
        db,
        page,
        actor,
        day,
        payload.start,
        payload.end,
        breaks=[(b.start, b.end) for b in payload.breaks],
    )
    return _to_working_day_out(row)


@router.delete("/pages/{slug}/working-days/{day}", status_code=status.HTTP_204_NO_CONTENT)
def remove_working_day(
    day: date,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    services.delete_working_day(db, page, actor, day)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/pages/{slug}/working-days/patterns", response_model=List[WorkingDayOut])
def apply_pattern(
    payload: SchedulePatternCreate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    rows = services.apply_schedule_pattern(
        db,
        page,
        actor,
        payload.kind,
        payload.start,
        payload.end,
        start_date=payload.start_date,
        end_date=payload.end_date,
        breaks=[(b.start, b.end) for b in payload.breaks],
        days_on=payload.days_on,
        days_off=payload.days_off,
        weekdays=payload.weekdays,
        dates=payload.dates,
        skip_holidays=payload.skip_holidays,
        holidays_country=payload.holidays_country,
    )
    return [_to_working_day_out(row) for row in rows]


# Cancellation policy and blocklist


@router.get("/pages/{slug}/cancellation-policy", response_model=CancellationPolicyOut)
def read_policy(page: BeautyPage = Depends(get_page), db: Session = Depends(get_db)):
    return _policy_out(services.get_cancellation_policy(db, page))


@router.put("/pages/{slug}/cancellation-policy", response_model=CancellationPolicyOut)
def put_policy(
    payload: CancellationPolicyIn,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    policy = services.update_cancellation_policy(db, page, actor, **payload.model_dump(exclude_none=True))
    return _policy_out(policy)


@router.get("/pages/{slug}/blocked-clients", response_model=List[BlockOut])
def read_blocked_clients(
    active_only: bool = Query(default=True),
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    rows = services.list_blocked_clients(db, page, actor, active_only=active_only)
    return [_to_block_out(row) for row in rows]


@router.post("/pages/{slug}/blocked-clients", response_model=BlockOut)
def add_blocked_client(
    payload: BlockCreate,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    row = services.block_client(
        db,
        page,
        actor,
        client_id=payload.client_id,
        client_phone=payload.client_phone,
        duration_days=payload.duration_days,
        reason=payload.reason,
    )
    return _to_block_out(row)


@router.delete("/pages/{slug}/blocked-clients/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_blocked_client(
    block_id: str,
    page: BeautyPage = Depends(get_page),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    services.unblock_client(db, page, actor, block_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
