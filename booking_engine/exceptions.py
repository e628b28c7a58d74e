"""
Domain exceptions for the booking reconciliation engine.

Every error carries a short, user-safe message. Routers translate these into
HTTP responses without exposing provider or database internals.
"""

from typing import Optional


class BookingEngineError(Exception):
    """Base class for all reconciliation errors"""

    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BookingNotFoundError(BookingEngineError):
    http_status = 404


class InvalidTransitionError(BookingEngineError):
    """Requested lifecycle change is not allowed from the current status"""

    http_status = 400

    def __init__(self, reason: str, current_status: Optional[str] = None, event: Optional[str] = None):
        super().__init__(reason)
        self.current_status = current_status
        self.event = event


class StoreUnavailableError(BookingEngineError):
    """The store of record could not be read or written"""

    http_status = 503


class PartialFailureError(BookingEngineError):
    """Calendar write succeeded but the store write did not"""

    http_status = 502

    def __init__(self, message: str, booking_ref: str, calendar_event_id: Optional[str] = None):
        super().__init__(message)
        self.booking_ref = booking_ref
        self.calendar_event_id = calendar_event_id


class CalendarError(BookingEngineError):
    http_status = 503


class CalendarAPIError(CalendarError):
    """Non-2xx answer from the calendar provider"""

    def __init__(self, status_code: int, message: str, operation: str = "calendar request"):
        super().__init__(f"{operation} failed with HTTP {status_code}: {message}")
        self.status_code = status_code
        self.operation = operation


class CalendarAuthError(CalendarError):
    """Calendar credentials missing, undecryptable or refused"""


class CalendarUnavailableError(CalendarError):
    """Calendar write could not be completed; the booking was left unchanged"""


class CircuitOpenError(BookingEngineError):
    http_status = 503

    def __init__(self, name: str, retry_after: float = 0.0):
        super().__init__(f"Circuit breaker OPEN for {name}")
        self.name = name
        self.retry_after = retry_after


class RetryExhaustedError(BookingEngineError):
    http_status = 503

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(f"{operation} failed after {attempts} attempts. Last error: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class AuditTrailImmutableError(BookingEngineError):
    """Raised when code tries to modify or remove an audit entry"""


class WebhookSignatureError(BookingEngineError):
    """Payment webhook signature missing, malformed or not matching"""

    http_status = 400
