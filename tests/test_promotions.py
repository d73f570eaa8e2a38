from datetime import date, datetime, timedelta

import pytest

from beautypage.core.errors import InvalidFormat
from beautypage.core.promotions import (
    PromotionStatus,
    SalePromotion,
    SlotPromotion,
    TimePromotion,
    best_promotion,
    day_of_week,
    discounted_price,
    effective_status,
    is_applicable,
    mark_slot_booked,
)
from beautypage.core.time_utils import TimeOfDay

t = TimeOfDay.parse
TODAY = date(2026, 10, 18)
BOOKING_DAY = date(2026, 10, 25)


def base(promo_id, discount, status=PromotionStatus.ACTIVE):
    return dict(
        id=promo_id,
        beauty_page_id="page-1",
        service_id="svc-1",
        discount_percentage=discount,
        original_price_cents=100000,
        discounted_price_cents=discounted_price(100000, discount),
        status=status,
        created_at=datetime(2026, 10, 1),
    )


def test_day_of_week_starts_on_sunday():
    assert day_of_week(date(2026, 10, 18)) == 0
    assert day_of_week(date(2026, 10, 19)) == 1
    assert day_of_week(date(2026, 10, 24)) == 6


def test_discounted_price_rounds_half_up():
    assert discounted_price(1000, 15) == 850
    assert discounted_price(999, 50) == 500


def test_sale_beats_smaller_time_promotion():
    sale = SalePromotion(**base("sale", 20))
    happy_hour = TimePromotion(**base("time", 15), recurring_start=t("10:00"))
    best = best_promotion([happy_hour, sale], BOOKING_DAY, t("10:00"), TODAY)
    assert best is sale


def test_booked_slot_promotion_is_never_returned():
    slot = SlotPromotion(
        **base("slot", 40, PromotionStatus.BOOKED), slot_date=BOOKING_DAY, slot_start=t("10:00"), slot_end=t("11:00")
    )
    sale = SalePromotion(**base("sale", 10))
    assert best_promotion([slot, sale], BOOKING_DAY, t("10:00"), TODAY) is sale
    assert best_promotion([slot], BOOKING_DAY, t("10:00"), TODAY) is None


def test_equal_discounts_keep_the_first_seen():
    older = SalePromotion(**base("older", 20))
    newer = SalePromotion(**base("newer", 20))
    assert best_promotion([older, newer], BOOKING_DAY, t("10:00"), TODAY) is older


def test_slot_promotion_matches_exact_date_and_start():
    slot = SlotPromotion(**base("slot", 30), slot_date=BOOKING_DAY, slot_start=t("10:00"), slot_end=t("11:00"))
    assert is_applicable(slot, BOOKING_DAY, t("10:00"), TODAY)
    assert not is_applicable(slot, BOOKING_DAY, t("10:15"), TODAY)
    assert not is_applicable(slot, BOOKING_DAY + timedelta(days=1), t("10:00"), TODAY)


def test_sale_date_range_is_inclusive():
    sale = SalePromotion(**base("sale", 20), starts_at=date(2026, 10, 20), ends_at=BOOKING_DAY)
    assert is_applicable(sale, BOOKING_DAY, t("09:00"), TODAY)
    assert is_applicable(sale, date(2026, 10, 20), t("09:00"), TODAY)
    assert not is_applicable(sale, date(2026, 10, 19), t("09:00"), TODAY)
    assert not is_applicable(sale, date(2026, 10, 26), t("09:00"), TODAY)


def test_time_promotion_weekdays_and_validity():
    # BOOKING_DAY is a Sunday
    sundays = TimePromotion(**base("time", 15), recurring_start=t("10:00"), recurring_days=frozenset({0}))
    mondays = TimePromotion(**base("time2", 15), recurring_start=t("10:00"), recurring_days=frozenset({1}))
    assert is_applicable(sundays, BOOKING_DAY, t("10:00"), TODAY)
    assert not is_applicable(mondays, BOOKING_DAY, t("10:00"), TODAY)
    assert not is_applicable(sundays, BOOKING_DAY, t("11:00"), TODAY)

    lapsed = TimePromotion(**base("time3", 15), recurring_start=t("10:00"), recurring_valid_until=date(2026, 10, 1))
    assert not is_applicable(lapsed, BOOKING_DAY, t("10:00"), TODAY)


def test_effective_status_derives_expiry():
    ended = SalePromotion(**base("sale", 20), ends_at=TODAY - timedelta(days=1))
    assert effective_status(ended, TODAY) == PromotionStatus.EXPIRED
    past_slot = SlotPromotion(**base("slot", 20), slot_date=TODAY - timedelta(days=1), slot_start=t("10:00"))
    assert effective_status(past_slot, TODAY) == PromotionStatus.EXPIRED
    booked = SlotPromotion(**base("slot2", 20, PromotionStatus.BOOKED), slot_date=TODAY - timedelta(days=1))
    assert effective_status(booked, TODAY) == PromotionStatus.BOOKED
    assert effective_status(SalePromotion(**base("open", 20)), TODAY) == PromotionStatus.ACTIVE


def test_mark_slot_booked_is_idempotent():
    slot = SlotPromotion(**base("slot", 30), slot_date=BOOKING_DAY, slot_start=t("10:00"))
    booked = mark_slot_booked(slot)
    assert booked.status == PromotionStatus.BOOKED
    assert mark_slot_booked(booked) is booked
    with pytest.raises(InvalidFormat):
        mark_slot_booked(SalePromotion(**base("sale", 20)))


def test_promotion_validation():
    with pytest.raises(InvalidFormat):
        SalePromotion(**base("zero", 0))
    with pytest.raises(InvalidFormat):
        SalePromotion(**base("full", 100))
    with pytest.raises(InvalidFormat):
        SalePromotion(**base("stored-expired", 20, PromotionStatus.EXPIRED))
