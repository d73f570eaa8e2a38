import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class BeautyPage(Base):
    __tablename__ = "beauty_pages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    slug: Mapped[str] = mapped_column(String(80), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    owner_id: Mapped[str] = mapped_column(String(64), index=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    currency: Mapped[str] = mapped_column(String(3), default="UAH")
    slot_interval_minutes: Mapped[int] = mapped_column(Integer, default=15)
    auto_confirm: Mapped[bool] = mapped_column(Boolean, default=False)
    min_booking_notice_hours: Mapped[int] = mapped_column(Integer, default=0)
    max_booking_days_ahead: Mapped[int] = mapped_column(Integer, default=90)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class PageAdmin(Base):
    __tablename__ = "page_admins"
    __table_args__ = (UniqueConstraint("beauty_page_id", "user_id", name="uq_page_admins_page_user"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    beauty_page_id: Mapped[str] = mapped_column(ForeignKey("beauty_pages.id"), index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class Service(Base):
    __tablename__ = "services"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    beauty_page_id: Mapped[str] = mapped_column(ForeignKey("beauty_pages.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    price_cents: Mapped[int] = mapped_column(Integer, default=0)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    currency: Mapped[str] = mapped_column(String(3))
    # optional daily window the service can be booked in, HH:MM
    available_from: Mapped[str | None] = mapped_column(String(5), nullable=True)
    available_to: Mapped[str | None] = mapped_column(String(5), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class WorkingDay(Base):
    __tablename__ = "working_days"
    __table_args__ = (UniqueConstraint("beauty_page_id", "date", name="uq_working_days_page_date"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    beauty_page_id: Mapped[str] = mapped_column(ForeignKey("beauty_pages.id"), index=True)
    day: Mapped[date] = mapped_column("date", Date, index=True)
    start_time: Mapped[str] = mapped_column(String(5))
    end_time: Mapped[str] = mapped_column(String(5))
    # bumped by every write that changes the day's calendar
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    breaks = relationship(
        "WorkingDayBreak",
        cascade="all, delete-orphan",
        order_by="WorkingDayBreak.start_time",
    )


class WorkingDayBreak(Base):
    __tablename__ = "working_day_breaks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    working_day_id: Mapped[str] = mapped_column(ForeignKey("working_days.id"), index=True)
    start_time: Mapped[str] = mapped_column(String(5))
    end_time: Mapped[str] = mapped_column(String(5))


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    beauty_page_id: Mapped[str] = mapped_column(ForeignKey("beauty_pages.id"), index=True)
    day: Mapped[date] = mapped_column("date", Date, index=True)
    start_time: Mapped[str] = mapped_column(String(5))
    end_time: Mapped[str] = mapped_column(String(5))
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)

    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    client_name: Mapped[str] = mapped_column(String(120))
    client_phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    client_email: Mapped[str | None] = mapped_column(String(200), nullable=True)
    client_notes: Mapped[str | None] = mapped_column(String(500), nullable=True)
    creator_notes: Mapped[str | None] = mapped_column(String(2000), nullable=True)

    # snapshot of the booked selection, kept even if services change later
    service_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    service_name: Mapped[str] = mapped_column(String(300), default="")
    service_price_cents: Mapped[int] = mapped_column(Integer, default=0)
    service_duration_minutes: Mapped[int] = mapped_column(Integer, default=0)
    service_currency: Mapped[str] = mapped_column(String(3), default="")

    cancelled_by: Mapped[str | None] = mapped_column(String(16), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_quick_booking: Mapped[bool] = mapped_column(Boolean, default=False)
    promotion_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)

    lines = relationship(
        "AppointmentService",
        cascade="all, delete-orphan",
        order_by="AppointmentService.position",
    )


class AppointmentService(Base):
    __tablename__ = "appointment_services"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    appointment_id: Mapped[str] = mapped_column(ForeignKey("appointments.id"), index=True)
    service_id: Mapped[str] = mapped_column(String(36))
    service_name: Mapped[str] = mapped_column(String(120))
    price_cents: Mapped[int] = mapped_column(Integer)
    discounted_price_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    promotion_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0)


class AppointmentStatusEvent(Base):
    __tablename__ = "appointment_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    beauty_page_id: Mapped[str] = mapped_column(ForeignKey("beauty_pages.id"), index=True)
    appointment_id: Mapped[str] = mapped_column(ForeignKey("appointments.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16))
    action: Mapped[str] = mapped_column(String(40), default="status_update")
    actor: Mapped[str | None] = mapped_column(String(120), nullable=True)
    note: Mapped[str | None] = mapped_column(String(300), nullable=True)


class CancellationPolicyRow(Base):
    __tablename__ = "cancellation_policies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    beauty_page_id: Mapped[str] = mapped_column(ForeignKey("beauty_pages.id"), unique=True, index=True)
    allow_client_cancellation: Mapped[bool] = mapped_column(Boolean, default=True)
    cancellation_notice_hours: Mapped[int] = mapped_column(Integer, default=24)
    auto_block_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    max_cancellations: Mapped[int] = mapped_column(Integer, default=3)
    period_days: Mapped[int] = mapped_column(Integer, default=30)
    block_duration_days: Mapped[int] = mapped_column(Integer, default=30)
    no_show_multiplier: Mapped[float] = mapped_column(Float, default=2.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, onupdate=utc_now_naive)


class BlockedClient(Base):
    __tablename__ = "blocked_clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    beauty_page_id: Mapped[str] = mapped_column(ForeignKey("beauty_pages.id"), index=True)
    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    client_phone: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    blocked_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    # NULL means the block never expires
    blocked_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    source: Mapped[str] = mapped_column(String(16), default="manual")
    no_show_count: Mapped[int] = mapped_column(Integer, default=0)


class Promotion(Base):
    __tablename__ = "promotions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    beauty_page_id: Mapped[str] = mapped_column(ForeignKey("beauty_pages.id"), index=True)
    service_id: Mapped[str] = mapped_column(ForeignKey("services.id"), index=True)
    type: Mapped[str] = mapped_column(String(8))
    discount_percentage: Mapped[int] = mapped_column(Integer)
    original_price_cents: Mapped[int] = mapped_column(Integer)
    discounted_price_cents: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)

    starts_at: Mapped[date | None] = mapped_column(Date, nullable=True)
    ends_at: Mapped[date | None] = mapped_column(Date, nullable=True)

    slot_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    slot_start_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    slot_end_time: Mapped[str | None] = mapped_column(String(5), nullable=True)

    recurring_start_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    # JSON list of Sunday-based weekday numbers, NULL means every day
    recurring_days: Mapped[str | None] = mapped_column(Text, nullable=True)
    recurring_valid_until: Mapped[date | None] = mapped_column(Date, nullable=True)
