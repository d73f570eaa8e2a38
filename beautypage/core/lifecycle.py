from dataclasses import replace
from datetime import datetime

from .domain import (
    Actor,
    ActorRole,
    Appointment,
    AppointmentStatus,
    CancelledBy,
    ClientCancellationReason,
)
from .errors import (
    CancellationReasonRequired,
    CannotModify,
    IllegalTransition,
    InvalidFormat,
    NotAllowed,
)

S = AppointmentStatus

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.NO_SHOW: frozenset(),
}

MODIFIABLE_STATUSES = frozenset({S.PENDING, S.CONFIRMED})


def allowed_targets(status: AppointmentStatus) -> frozenset[AppointmentStatus]:
    return ALLOWED_TRANSITIONS.get(status, frozenset())


def is_legal(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in allowed_targets(current)


def initial_status(actor: Actor, auto_confirm: bool = False) -> AppointmentStatus:
    # creator quick bookings skip pending
    if actor.is_staff or auto_confirm:
        return S.CONFIRMED
    return S.PENDING


def can_reschedule(appointment: Appointment) -> bool:
    return appointment.status in MODIFIABLE_STATUSES


def ensure_can_reschedule(appointment: Appointment) -> None:
    if not can_reschedule(appointment):
        raise CannotModify(
            f"Cannot change an appointment that is {appointment.status.value}",
            status=appointment.status.value,
        )


def parse_client_reason(raw: str | None) -> ClientCancellationReason:
    value = (raw or "").strip().lower()
    if not value:
        raise CancellationReasonRequired()
    try:
        return ClientCancellationReason(value)
    except ValueError as exc:
        raise InvalidFormat(f"unknown cancellation reason: {raw!r}") from exc


def _authorize(appointment: Appointment, target: AppointmentStatus, actor: Actor) -> None:
    if actor.is_staff:
        return
    if actor.role != ActorRole.CLIENT:
        raise NotAllowed()
    if target != S.CANCELLED:
        raise NotAllowed("Clients can only cancel their appointments")
    if not actor.user_id or actor.user_id != appointment.client_id:
        raise NotAllowed("Only the booked client can cancel this appointment")


def transition(
    appointment: Appointment,
    requested_status,
    actor: Actor,
    reason: str | None = None,
    now: datetime | None = None,
) -> Appointment:
    """Apply one lifecycle step and return the updated appointment.

    Legality is checked before authorization so an impossible move always
    reports ``IllegalTransition`` regardless of who asked.
    """
    target = requested_status if isinstance(requested_status, S) else S.parse(requested_status)
    current = appointment.status
    if not is_legal(current, target):
        raise IllegalTransition(
            f"Invalid appointment status transition: {current.value} -> {target.value}",
            from_status=current.value,
            to_status=target.value,
        )

    _authorize(appointment, target, actor)

    if target != S.CANCELLED:
        return replace(appointment, status=target)

    if actor.role == ActorRole.CLIENT:
        cancellation_reason = parse_client_reason(reason).value
        cancelled_by = CancelledBy.CLIENT
    else:
        cancellation_reason = (reason or "").strip() or None
        cancelled_by = CancelledBy.CREATOR

    return replace(
        appointment,
        status=S.CANCELLED,
        cancelled_by=cancelled_by,
        cancellation_reason=cancellation_reason,
        cancelled_at=now,
    )
