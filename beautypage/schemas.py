from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator

_HHMM = r"^\d{1,2}:\d{2}(:\d{2})?$"


class PageCreate(BaseModel):
    slug: str = Field(min_length=2, max_length=80, pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_-]*$")
    name: str = Field(min_length=2, max_length=120)
    timezone: str | None = Field(default=None, max_length=64)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    slot_interval_minutes: int | None = Field(default=None, ge=5, le=240)
    auto_confirm: bool = False
    min_booking_notice_hours: int = Field(default=0, ge=0, le=24 * 14)
    max_booking_days_ahead: int = Field(default=90, ge=1, le=730)


class PageSettingsUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    timezone: str | None = Field(default=None, max_length=64)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    slot_interval_minutes: int | None = Field(default=None, ge=5, le=240)
    auto_confirm: bool | None = None
    min_booking_notice_hours: int | None = Field(default=None, ge=0, le=24 * 14)
    max_booking_days_ahead: int | None = Field(default=None, ge=1, le=730)


class PageOut(BaseModel):
    id: str
    slug: str
    name: str
    owner_id: str
    timezone: str
    currency: str
    slot_interval_minutes: int
    auto_confirm: bool
    min_booking_notice_hours: int
    max_booking_days_ahead: int


class PageAdminCreate(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)


class PageAdminOut(BaseModel):
    id: str
    user_id: str
    created_at: datetime


class ServiceCreate(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    price_cents: int = Field(ge=0)
    duration_minutes: int = Field(ge=5, le=720)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    available_from: str | None = Field(default=None, pattern=_HHMM)
    available_to: str | None = Field(default=None, pattern=_HHMM)


class ServiceOut(BaseModel):
    id: str
    name: str
    price_cents: int
    duration_minutes: int
    currency: str
    available_from: str | None = None
    available_to: str | None = None


class BreakIn(BaseModel):
    start: str = Field(pattern=_HHMM)
    end: str = Field(pattern=_HHMM)


class BreakOut(BaseModel):
    start: str
    end: str


class WorkingDayUpsert(BaseModel):
    start: str = Field(pattern=_HHMM)
    end: str = Field(pattern=_HHMM)
    breaks: list[BreakIn] = Field(default_factory=list)


class WorkingDayOut(BaseModel):
    id: str
    date: date
    start: str
    end: str
    version: int
    breaks: list[BreakOut] = Field(default_factory=list)


class SchedulePatternCreate(BaseModel):
    kind: str = Field(pattern=r"^(rotation|weekly|bulk)$")
    start: str = Field(pattern=_HHMM)
    end: str = Field(pattern=_HHMM)
    breaks: list[BreakIn] = Field(default_factory=list)
    start_date: date | None = None
    end_date: date | None = None
    days_on: int | None = Field(default=None, ge=1, le=31)
    days_off: int | None = Field(default=None, ge=0, le=31)
    weekdays: list[int] | None = None
    dates: list[date] | None = None
    skip_holidays: bool = False
    holidays_country: str | None = Field(default=None, min_length=2, max_length=3)

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, value: list[int] | None) -> list[int] | None:
        if value is not None and any(d < 0 or d > 6 for d in value):
            raise ValueError("weekdays must be numbers 0 (Sunday) to 6 (Saturday)")
        return value


class PlacementCheck(BaseModel):
    date: date
    start: str = Field(pattern=_HHMM)
    end: str = Field(pattern=_HHMM)
    appointment_id: str | None = None


class PlacementOut(BaseModel):
    valid: bool
    reason: str | None = None
    code: str | None = None
    conflicting_appointment_id: str | None = None


class TotalsRequest(BaseModel):
    service_ids: list[str] = Field(default_factory=list)


class TotalsOut(BaseModel):
    price_cents: int
    duration_minutes: int
    currency: str


class SlotOut(BaseModel):
    time: str
    available: bool
    reason: str | None = None


class PromotionCreate(BaseModel):
    service_id: str
    type: str = Field(pattern=r"^(sale|slot|time)$")
    discount_percentage: int = Field(ge=1, le=99)
    starts_at: date | None = None
    ends_at: date | None = None
    slot_date: date | None = None
    slot_start: str | None = Field(default=None, pattern=_HHMM)
    recurring_start: str | None = Field(default=None, pattern=_HHMM)
    recurring_days: list[int] | None = None
    recurring_valid_until: date | None = None


class PromotionOut(BaseModel):
    id: str
    service_id: str
    type: str
    discount_percentage: int
    original_price_cents: int
    discounted_price_cents: int
    status: str
    starts_at: date | None = None
    ends_at: date | None = None
    slot_date: date | None = None
    slot_start: str | None = None
    slot_end: str | None = None
    recurring_start: str | None = None
    recurring_days: list[int] | None = None
    recurring_valid_until: date | None = None


class BookingCreate(BaseModel):
    date: date
    start: str = Field(pattern=_HHMM)
    service_ids: list[str] = Field(min_length=1)
    client_name: str = Field(min_length=2, max_length=120)
    client_phone: str | None = Field(default=None, min_length=7, max_length=40)
    client_email: str | None = Field(default=None, max_length=200)
    client_notes: str | None = Field(default=None, max_length=500)


class QuickBookingCreate(BaseModel):
    date: date
    start: str = Field(pattern=_HHMM)
    service_ids: list[str] | None = None
    duration_minutes: int | None = Field(default=None, ge=5, le=720)
    client_name: str | None = Field(default=None, max_length=120)
    client_phone: str | None = Field(default=None, min_length=7, max_length=40)
    client_notes: str | None = Field(default=None, max_length=500)


class RescheduleRequest(BaseModel):
    date: date
    start: str = Field(pattern=_HHMM)
    end: str | None = Field(default=None, pattern=_HHMM)


class ResizeRequest(BaseModel):
    start: str = Field(pattern=_HHMM)
    end: str = Field(pattern=_HHMM)


class AddServiceRequest(BaseModel):
    service_id: str
    extend_duration: bool = True


class ServiceAdditionOut(BaseModel):
    appointment_id: str
    service_name: str
    service_duration_minutes: int
    new_end: str
    valid: bool
    reason: str | None = None
    code: str | None = None
    conflicting_appointment_id: str | None = None


class CreatorNotesUpdate(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class StatusUpdate(BaseModel):
    status: str
    reason: str | None = Field(default=None, max_length=300)


class AppointmentLineOut(BaseModel):
    id: str
    service_id: str
    service_name: str
    price_cents: int
    discounted_price_cents: int | None = None
    duration_minutes: int
    currency: str
    promotion_id: str | None = None


class AppointmentOut(BaseModel):
    id: str
    date: date
    start: str
    end: str
    status: str
    client_id: str | None = None
    client_name: str
    client_phone: str | None = None
    client_notes: str | None = None
    # staff only
    creator_notes: str | None = None
    service_id: str | None = None
    service_name: str
    service_price_cents: int
    service_duration_minutes: int
    service_currency: str
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    is_quick_booking: bool = False
    promotion_id: str | None = None
    created_at: datetime
    lines: list[AppointmentLineOut] = Field(default_factory=list)


class StatusEventOut(BaseModel):
    id: int
    appointment_id: str
    from_status: str | None = None
    to_status: str
    action: str
    actor: str | None = None
    note: str | None = None
    created_at: datetime


class CanCancelOut(BaseModel):
    appointment_id: str
    can_cancel: bool
    notice_hours: int
    deadline: datetime


class CancellationPolicyIn(BaseModel):
    allow_client_cancellation: bool | None = None
    cancellation_notice_hours: int | None = Field(default=None, ge=0, le=24 * 14)
    auto_block_enabled: bool | None = None
    max_cancellations: int | None = Field(default=None, ge=0, le=100)
    period_days: int | None = Field(default=None, ge=1, le=365)
    block_duration_days: int | None = Field(default=None, ge=0, le=3650)
    no_show_multiplier: float | None = Field(default=None, ge=0, le=10)


class CancellationPolicyOut(BaseModel):
    allow_client_cancellation: bool
    cancellation_notice_hours: int
    auto_block_enabled: bool
    max_cancellations: int
    period_days: int
    block_duration_days: int
    no_show_multiplier: float


class BlockCreate(BaseModel):
    client_id: str | None = Field(default=None, max_length=64)
    client_phone: str | None = Field(default=None, min_length=7, max_length=40)
    duration_days: int | None = Field(default=None, ge=1, le=3650)
    reason: str | None = Field(default=None, max_length=300)


class BlockOut(BaseModel):
    id: str
    client_id: str | None = None
    client_phone: str | None = None
    blocked_at: datetime
    blocked_until: datetime | None = None
    reason: str | None = None
    source: str
    no_show_count: int = 0
