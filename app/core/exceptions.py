"""
Booking/escrow domain errors.

Every guard failure is raised as one of these and converted to a structured
payload ({success, error, message, field, code, ...}) at the API layer.
"""
from typing import Any


class BookingError(Exception):
    """Base class for caller-visible booking and ledger errors."""

    status_code = 400

    def __init__(self, message: str, field: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details

    @property
    def code(self) -> str:
        return self.__class__.__name__

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": False,
            "error": True,
            "message": self.message,
            "code": self.code,
        }
        if self.field:
            payload["field"] = self.field
        payload.update(self.details)
        return payload


class ValidationError(BookingError):
    """Malformed or missing input, user-correctable."""

    status_code = 400


class Unauthorized(BookingError):
    """Caller does not own the resource."""

    status_code = 403


class NotFound(BookingError):
    status_code = 404


class BookingNotFound(NotFound):
    pass


class WalletNotFound(NotFound):
    pass


class HoldNotFound(NotFound):
    pass


class InvalidState(BookingError):
    """Operation is illegal in the current status (includes lost compare-and-set)."""

    status_code = 409


class AlreadyCheckedIn(InvalidState):
    pass


class AlreadyCompleted(InvalidState):
    pass


class AlreadyReleased(InvalidState):
    """The hold transaction already left the 'held' status."""


class InsufficientFunds(BookingError):
    status_code = 402


class GuardFailure(BookingError):
    """Domain-specific time/space guard."""

    status_code = 422


class CancellationWindowClosed(GuardFailure):
    pass


class TooEarly(GuardFailure):
    pass


class TokenExpired(GuardFailure):
    pass


class TokenInvalid(GuardFailure):
    pass


class OutOfRadius(GuardFailure):
    def __init__(self, message: str, distance_m: int, radius_m: float) -> None:
        super().__init__(message, distance_m=distance_m, radius_m=radius_m)
        self.distance_m = distance_m


class CheckInWindowClosed(GuardFailure):
    def __init__(self, message: str, minutes_until_open: int | None = None) -> None:
        details = {}
        if minutes_until_open is not None:
            details["minutes_until_open"] = minutes_until_open
        super().__init__(message, **details)
        self.minutes_until_open = minutes_until_open
