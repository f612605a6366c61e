# app/core/exceptions.py
"""
Booking-engine exceptions.

Each error carries a stable ``code`` that the API layer returns as
``error_code`` together with a user-facing message.
"""

from typing import Any, Dict, Optional


class BookingError(Exception):
    """Base exception for booking, ledger and billing errors."""

    code = "BOOKING_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(BookingError):
    """Bad input, e.g. unknown session or duplicate registration."""

    code = "VALIDATION"
    status_code = 400


class NotFoundError(ValidationError):
    """A referenced row does not exist."""

    status_code = 404


class NotEntitledError(BookingError):
    """The entitlement evaluator (or the ledger at write time) denied the booking."""

    code = "NOT_ENTITLED"
    status_code = 403


class CapacityExceededError(BookingError):
    """Session is full; the caller may join the waitlist instead."""

    code = "CAPACITY_EXCEEDED"
    status_code = 409


class DeadlinePassedError(BookingError):
    code = "DEADLINE_PASSED"
    status_code = 409


class ConflictError(BookingError):
    """Optimistic-concurrency retries exhausted."""

    code = "CONFLICT"
    status_code = 409


class ExternalUnavailableError(BookingError):
    """The payment processor could not be reached or rejected the call."""

    code = "EXTERNAL_UNAVAILABLE"
    status_code = 502


# Ledger-specific errors

class InsufficientCreditsError(NotEntitledError):
    def __init__(self, balance: int, requested: int) -> None:
        super().__init__(
            "No credits remaining",
            details={"balance": balance, "requested": requested},
        )


class LedgerConflictError(ConflictError):
    def __init__(self, membership_id: Any, attempts: int) -> None:
        super().__init__(
            "The booking could not be completed, please try again",
            details={"membership_id": str(membership_id), "attempts": attempts},
        )
