from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Union

from .errors import InvalidFormat
from .time_utils import TimeOfDay


class PromotionType(str, Enum):
    SALE = "sale"
    SLOT = "slot"
    TIME = "time"


class PromotionStatus(str, Enum):
    ACTIVE = "active"
    BOOKED = "booked"
    EXPIRED = "expired"
    INACTIVE = "inactive"


# expired is derived from dates, never stored
STORED_STATUSES = frozenset(
    {PromotionStatus.ACTIVE, PromotionStatus.BOOKED, PromotionStatus.INACTIVE}
)


@dataclass(frozen=True)
class _PromotionBase:
    id: str
    beauty_page_id: str
    service_id: str
    discount_percentage: int
    original_price_cents: int
    discounted_price_cents: int
    status: PromotionStatus
    created_at: datetime | None

    def __post_init__(self):
        if not 0 < self.discount_percentage < 100:
            raise InvalidFormat("discount percentage must be between 1 and 99")
        if self.status not in STORED_STATUSES:
            raise InvalidFormat(f"promotion status cannot be stored: {self.status.value}")


@dataclass(frozen=True)
class SalePromotion(_PromotionBase):
    starts_at: date | None = None
    ends_at: date | None = None
    type = PromotionType.SALE


@dataclass(frozen=True)
class SlotPromotion(_PromotionBase):
    slot_date: date | None = None
    slot_start: TimeOfDay | None = None
    slot_end: TimeOfDay | None = None
    type = PromotionType.SLOT


@dataclass(frozen=True)
class TimePromotion(_PromotionBase):
    recurring_start: TimeOfDay | None = None
    # 0 = Sunday ... 6 = Saturday, None = every day
    recurring_days: frozenset[int] | None = None
    recurring_valid_until: date | None = None
    type = PromotionType.TIME


Promotion = Union[SalePromotion, SlotPromotion, TimePromotion]


def day_of_week(day: date) -> int:
    """Sunday-based day number."""
    return (day.weekday() + 1) % 7


def discounted_price(price_cents: int, discount_percentage: int) -> int:
    value = Decimal(int(price_cents)) * Decimal(100 - int(discount_percentage)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def effective_status(promo: Promotion, today: date) -> PromotionStatus:
    if promo.status != PromotionStatus.ACTIVE:
        return promo.status
    if isinstance(promo, SalePromotion) and promo.ends_at and promo.ends_at < today:
        return PromotionStatus.EXPIRED
    if isinstance(promo, SlotPromotion) and promo.slot_date and promo.slot_date < today:
        return PromotionStatus.EXPIRED
    if (
        isinstance(promo, TimePromotion)
        and promo.recurring_valid_until
        and promo.recurring_valid_until < today
    ):
        return PromotionStatus.EXPIRED
    return PromotionStatus.ACTIVE


def is_applicable(
    promo: Promotion, booking_date: date, start_time: TimeOfDay, today: date
) -> bool:
    if isinstance(promo, SalePromotion):
        if promo.starts_at is not None and promo.starts_at > booking_date:
            return False
        if promo.ends_at is not None and promo.ends_at < booking_date:
            return False
        return True

    if isinstance(promo, SlotPromotion):
        return promo.slot_date == booking_date and promo.slot_start == start_time

    if isinstance(promo, TimePromotion):
        if promo.recurring_start != start_time:
            return False
        if promo.recurring_valid_until is not None and promo.recurring_valid_until < today:
            return False
        if promo.recurring_days is not None and day_of_week(booking_date) not in promo.recurring_days:
            return False
        return True

    return False


def best_promotion(
    promotions: Iterable[Promotion],
    booking_date: date,
    start_time: TimeOfDay,
    today: date,
) -> Promotion | None:
    """Highest discount among active, applicable promotions.

    Equal discounts keep the first one seen; callers feed promotions oldest
    first so the choice is stable.
    """
    best = None
    for promo in promotions:
        if promo.status != PromotionStatus.ACTIVE:
            continue
        if not is_applicable(promo, booking_date, start_time, today):
            continue
        if best is None or promo.discount_percentage > best.discount_percentage:
            best = promo
    return best


def mark_slot_booked(promo: Promotion) -> Promotion:
    if not isinstance(promo, SlotPromotion):
        raise InvalidFormat("only slot promotions can be booked")
    if promo.status == PromotionStatus.BOOKED:
        return promo
    return replace(promo, status=PromotionStatus.BOOKED)
