# Custom exceptions to be used throughout the project.


class BookingError(Exception):
    """
    Base class for every expected, caller-recoverable failure of the booking engine.
    Each subclass carries the HTTP status and short error code the Flask app renders.
    """
    status_code = 400
    code = "booking_error"

    # By default Exception class takes a tuple of arguments
    def __init__(self, message: str = None, *args):
        self.message = message or self.__class__.__doc__.strip().splitlines()[0]
        super().__init__(self.message, *args)

    def to_dict(self):
        return {"error": self.code, "message": self.message}


class ValidationError(BookingError):
    """
    Input was malformed (rule, time, date, amount, reason).
    Raised before anything is persisted.
    """
    status_code = 422
    code = "validation_error"


class SlotUnavailable(BookingError):
    """
    The requested slot is booked, blocked, excluded or in the past.
    Also raised for the losing request when two bookings race for the same slot.
    """
    status_code = 409
    code = "slot_unavailable"


class InvalidTransition(BookingError):
    """
    The booking cannot move to the requested status from its current one.
    """
    status_code = 409
    code = "invalid_transition"


class CancellationWindowClosed(BookingError):
    """
    The booking starts too soon to be cancelled.
    """
    status_code = 409
    code = "cancellation_window_closed"


class InsufficientFunds(BookingError):
    """
    The requester's wallet balance does not cover the booking amount.
    """
    status_code = 402
    code = "insufficient_funds"


class BookingNotFound(BookingError):
    """
    No booking exists with the given id.
    """
    status_code = 404
    code = "booking_not_found"


class PaymentNotVerified(BookingError):
    """
    The payment gateway did not report the payment as succeeded.
    """
    status_code = 402
    code = "payment_not_verified"


class PersistenceError(BookingError):
    """
    The store could not be reached or rejected the operation. Retry with backoff.
    """
    status_code = 503
    code = "persistence_error"
