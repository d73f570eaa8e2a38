"""Cancellation notice and automatic blocking of unreliable clients.

No-shows weigh ``no_show_multiplier`` cancellations each. The weighted
count is compared to ``max_cancellations`` as an exact value, without
rounding, so 2 cancellations + 1 no-show at x1.5 (= 3.5) crosses a
threshold of 3 and 1 cancellation + 1 no-show at x1.5 (= 2.5) does not.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Sequence


class HistoryKind(str, Enum):
    CANCELLATION = "cancellation"
    NO_SHOW = "no_show"


class BlockSource(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


@dataclass(frozen=True)
class CancellationPolicy:
    is_enabled: bool = True
    max_cancellations: int = 3
    period_days: int = 30
    block_duration_days: int = 30
    no_show_multiplier: float = 2.0
    allow_client_cancellation: bool = True
    cancellation_notice_hours: int = 24


@dataclass(frozen=True)
class HistoryEvent:
    kind: HistoryKind
    occurred_at: datetime


@dataclass(frozen=True)
class BlockDecision:
    triggered: bool
    cancellations: int
    no_shows: int
    weighted_count: float
    threshold: int
    blocked_until: datetime | None = None


@dataclass(frozen=True)
class ClientBlock:
    client_id: str | None
    client_phone: str | None
    blocked_at: datetime
    blocked_until: datetime | None
    source: BlockSource = BlockSource.MANUAL
    no_show_count: int = 0

    def is_active(self, now: datetime) -> bool:
        return self.blocked_until is None or now < self.blocked_until


def normalize_phone(phone: str | None) -> str | None:
    raw = (phone or "").strip()
    if not raw:
        return None
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return None
    return f"+{digits}" if raw.startswith("+") else digits


def can_cancel(appointment_start: datetime, notice_hours: float, now: datetime) -> bool:
    return appointment_start - now >= timedelta(hours=notice_hours)


def can_client_cancel(
    appointment_start: datetime, policy: CancellationPolicy, now: datetime
) -> bool:
    if not policy.allow_client_cancellation:
        return False
    return can_cancel(appointment_start, policy.cancellation_notice_hours, now)


def evaluate_block_trigger(
    history: Iterable[HistoryEvent], policy: CancellationPolicy, now: datetime
) -> BlockDecision:
    window_start = now - timedelta(days=policy.period_days)
    cancellations = 0
    no_shows = 0
    for event in history:
        if not window_start <= event.occurred_at <= now:
            continue
        if event.kind == HistoryKind.NO_SHOW:
            no_shows += 1
        else:
            cancellations += 1

    weighted = cancellations + no_shows * float(policy.no_show_multiplier)
    triggered = bool(policy.is_enabled) and policy.max_cancellations > 0 and (
        weighted >= policy.max_cancellations
    )
    blocked_until = None
    if triggered and policy.block_duration_days > 0:
        blocked_until = now + timedelta(days=policy.block_duration_days)

    return BlockDecision(
        triggered=triggered,
        cancellations=cancellations,
        no_shows=no_shows,
        weighted_count=weighted,
        threshold=policy.max_cancellations,
        blocked_until=blocked_until,
    )


def merge_block(
    existing: ClientBlock | None,
    decision: BlockDecision,
    client_id: str | None,
    client_phone: str | None,
    now: datetime,
) -> ClientBlock | None:
    """New block state after a trigger, or ``None`` when nothing changes.

    Automatic blocks only ever extend; manual blocks are left alone.
    """
    if not decision.triggered:
        return None
    if existing is not None and existing.is_active(now):
        if existing.source == BlockSource.MANUAL or existing.blocked_until is None:
            return None
        if decision.blocked_until is not None and existing.blocked_until >= decision.blocked_until:
            return None
        blocked_at = existing.blocked_at
    else:
        blocked_at = now

    return ClientBlock(
        client_id=client_id,
        client_phone=normalize_phone(client_phone),
        blocked_at=blocked_at,
        blocked_until=decision.blocked_until,
        source=BlockSource.AUTO,
        no_show_count=decision.no_shows,
    )


def _matches(block: ClientBlock, client_id: str | None, phone: str | None) -> bool:
    if client_id:
        return block.client_id == client_id
    return phone is not None and normalize_phone(block.client_phone) == phone


def find_active_block(
    blocks: Sequence[ClientBlock],
    client_id: str | None,
    client_phone: str | None,
    now: datetime,
) -> ClientBlock | None:
    """Authenticated clients are matched by id, guests by phone."""
    phone = normalize_phone(client_phone)
    active = [
        b for b in blocks if b.is_active(now) and _matches(b, client_id, phone)
    ]
    for block in active:
        if block.source == BlockSource.MANUAL:
            return block
    return active[0] if active else None


def is_blocked(
    blocks: Sequence[ClientBlock],
    client_id: str | None,
    client_phone: str | None,
    now: datetime,
) -> bool:
    return find_active_block(blocks, client_id, client_phone, now) is not None
