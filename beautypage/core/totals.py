from dataclasses import dataclass
from typing import Sequence

from .domain import BookingService
from .errors import EmptySelection, MixedCurrencies


@dataclass(frozen=True)
class Totals:
    price_cents: int
    duration_minutes: int
    currency: str


def compute_totals(services: Sequence[BookingService]) -> Totals:
    """Sum a multi-service selection. A total across currencies is refused."""
    if not services:
        raise EmptySelection()

    currency = services[0].currency
    for service in services[1:]:
        if service.currency != currency:
            raise MixedCurrencies(
                f"Cannot combine {currency} and {service.currency} services",
                currencies=sorted({s.currency for s in services}),
            )

    return Totals(
        price_cents=sum(int(s.price_cents) for s in services),
        duration_minutes=sum(int(s.duration_minutes) for s in services),
        currency=currency,
    )
