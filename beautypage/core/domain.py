from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum

from .errors import InvalidFormat
from .time_utils import TimeOfDay


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    @classmethod
    def parse(cls, raw) -> "AppointmentStatus":
        try:
            return cls(str(raw or "").strip().lower())
        except ValueError as exc:
            raise InvalidFormat(f"invalid appointment status: {raw!r}") from exc


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)
# statuses that no longer occupy the calendar
RELEASED_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})


class ActorRole(str, Enum):
    CLIENT = "client"
    CREATOR = "creator"
    ADMIN = "admin"


class CancelledBy(str, Enum):
    CLIENT = "client"
    CREATOR = "creator"


class ClientCancellationReason(str, Enum):
    CHANGED_PLANS = "changed_plans"
    FEELING_UNWELL = "feeling_unwell"
    OTHER = "other"


@dataclass(frozen=True)
class Actor:
    role: ActorRole
    user_id: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in (ActorRole.CREATOR, ActorRole.ADMIN)


@dataclass(frozen=True)
class Appointment:
    id: str
    date: date
    start: TimeOfDay
    end: TimeOfDay
    status: AppointmentStatus = AppointmentStatus.PENDING
    client_id: str | None = None
    client_name: str = ""
    client_phone: str | None = None
    service_id: str | None = None
    service_price_cents: int = 0
    service_duration_minutes: int = 0
    service_currency: str = ""
    client_notes: str | None = None
    cancelled_by: CancelledBy | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None

    def __post_init__(self):
        if not self.start < self.end:
            raise InvalidFormat("appointment must start before it ends")

    @property
    def occupies_calendar(self) -> bool:
        return self.status not in RELEASED_STATUSES


@dataclass(frozen=True)
class BookingService:
    id: str
    name: str
    price_cents: int
    duration_minutes: int
    currency: str
