# errors.py


class BookingError(Exception):
    """Base class for every typed outcome the booking engine can abort with."""
    status_code = 500
    retryable = False
    reason = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInput(BookingError):
    status_code = 400
    reason = "invalid_input"


class NotFound(BookingError):
    status_code = 404
    reason = "not_found"


class InvalidTransition(BookingError):
    status_code = 409
    reason = "invalid_transition"


class NoEligiblePractitioner(BookingError):
    status_code = 422
    reason = "no_eligible_practitioner"


class SlotConflict(BookingError):
    """The slot was taken (or the store detected a conflicting transaction). Safe to retry with fresh data."""
    status_code = 409
    retryable = True
    reason = "slot_conflict"


class IdentityConflict(BookingError):
    status_code = 409
    reason = "identity_conflict"


class InternalFailure(BookingError):
    status_code = 500
    reason = "internal"
