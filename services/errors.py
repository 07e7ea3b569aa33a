"""Typed failures raised by the booking core.

Every error carries the HTTP status it maps to and a stable ``code`` that
clients can switch on. ``details`` is merged into the JSON error body.
"""


class BookingError(Exception):
    status_code = 400
    code = "BookingError"
    message = "Booking request failed"

    def __init__(self, message=None, **details):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = details

    def to_dict(self):
        body = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class InvalidRequest(BookingError):
    code = "InvalidRequest"
    message = "Invalid request"


# ---------- contention ----------
class SlotUnavailable(BookingError):
    code = "SlotUnavailable"
    message = "One or more slots are no longer available"


class SlotLocked(BookingError):
    code = "SlotLocked"
    message = "Slot is held or booked and cannot be changed"


# ---------- authenticity ----------
class InvalidSignature(BookingError):
    code = "InvalidSignature"
    message = "Invalid payment signature"


# ---------- authorization ----------
class Unauthorized(BookingError):
    status_code = 403
    code = "Unauthorized"
    message = "Unauthorized"


class OwnershipMismatch(BookingError):
    code = "OwnershipMismatch"
    message = "Selected slots must belong to a single turf owner"


# ---------- lookups ----------
class NotFound(BookingError):
    status_code = 404
    code = "NotFound"
    message = "Not found"


class BookingNotFound(NotFound):
    code = "BookingNotFound"
    message = "Booking record not found for this payment"


# ---------- policy ----------
class WrongState(BookingError):
    code = "WrongState"
    message = "Booking is not cancellable"


class TooLateToCancel(BookingError):
    code = "TooLateToCancel"
    message = "Slot has already started"


class MonthlyCancelLimitReached(BookingError):
    code = "MonthlyCancelLimitReached"
    message = "Monthly cancellation limit reached"


class InvalidReason(BookingError):
    code = "InvalidReason"
    message = "A cancellation reason is required"


class BookingExpired(BookingError):
    status_code = 409
    code = "BookingExpired"
    message = "Booking is no longer pending payment"


# ---------- dependencies ----------
class PaymentGatewayUnavailable(BookingError):
    status_code = 500
    code = "PaymentGatewayUnavailable"
    message = "Payments not configured"


class GatewayError(Exception):
    """Raised by gateway adapters when the provider call fails."""


# ---------- integrity ----------
class ConsistencyViolation(BookingError):
    status_code = 500
    code = "ConsistencyViolation"
    message = "Booking and slot state disagree"


POLICY_ERRORS = (WrongState, TooLateToCancel, MonthlyCancelLimitReached, InvalidReason)
