class BookingError(ValueError):
    """Base for every outcome the engine reports to its caller.

    Subclasses ValueError so service code can keep the plain
    ``except ValueError`` handling used by the routers.
    """

    code = "booking_error"
    message = "Booking request rejected"

    def __init__(self, message: str | None = None, **context):
        self.context = context
        super().__init__(message or self.message)

    def as_dict(self) -> dict:
        return {"detail": str(self), "code": self.code}


class InvalidFormat(BookingError):
    code = "invalid_format"
    message = "Invalid format"


class NotFound(BookingError):
    code = "not_found"
    message = "Not found"


class DataStoreError(BookingError):
    """A row the engine relies on is missing or inconsistent."""

    code = "data_store_error"
    message = "Something went wrong"


class BookingRuleError(BookingError):
    """Expected, recoverable rejection surfaced to the end user."""

    code = "booking_rule"


class NotAWorkingDay(BookingRuleError):
    code = "not_a_working_day"
    message = "Not a working day"


class OutsideWorkingHours(BookingRuleError):
    code = "outside_working_hours"
    message = "Outside working hours"


class ConflictsWithBreak(BookingRuleError):
    code = "conflicts_with_break"
    message = "Conflicts with break time"


class Conflict(BookingRuleError):
    code = "conflict"
    message = "Conflicts with another appointment"

    def __init__(self, message: str | None = None, appointment=None, **context):
        self.appointment = appointment
        if message is None and appointment is not None:
            name = getattr(appointment, "client_name", None) or "another client"
            message = f"Conflicts with {name}'s appointment"
        super().__init__(message, **context)


class SlotTaken(Conflict):
    code = "slot_taken"
    message = "This time was just taken, please pick another"


class BelowMinimumDuration(BookingRuleError):
    code = "below_minimum_duration"
    message = "Appointment is shorter than the minimum duration"


class IllegalTransition(BookingRuleError):
    code = "illegal_transition"
    message = "Invalid appointment status transition"


class CannotModify(BookingRuleError):
    code = "cannot_modify"
    message = "Appointment can no longer be changed"


class NotAllowed(BookingRuleError):
    code = "not_allowed"
    message = "Not allowed"


class CancellationReasonRequired(BookingRuleError):
    code = "cancellation_reason_required"
    message = "A cancellation reason is required"


class CancellationWindowClosed(BookingRuleError):
    code = "cancellation_window_closed"
    message = "It is too late to cancel this appointment"


class EmptySelection(BookingRuleError):
    code = "empty_selection"
    message = "At least one service must be selected"


class MixedCurrencies(BookingRuleError):
    code = "mixed_currencies"
    message = "Selected services use different currencies"


class ClientBlocked(BookingRuleError):
    code = "client_blocked"
    message = "Booking with this beauty page is not available"


class InThePast(BookingRuleError):
    code = "in_the_past"
    message = "Selected time is in the past"


class TooSoon(BookingRuleError):
    code = "too_soon"
    message = "Selected time does not respect the minimum booking notice"


class TooFarAhead(BookingRuleError):
    code = "too_far_ahead"
    message = "Selected date is too far in the future"
