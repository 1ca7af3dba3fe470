"""
Exception taxonomy for credit accounting.

Every error raised by the ledger, extractor and streaming tracker derives
from CreditGuardError so callers can catch the whole family at once.
"""

from typing import Any, Dict, Optional


class CreditGuardError(Exception):
    """Base class for all credit accounting errors."""


class ValidationError(CreditGuardError, ValueError):
    """Raised when tracker input has the wrong shape or type."""


class TokenCountValidationError(ValidationError):
    """Raised when token counts are negative, non-numeric or too large."""


class InsufficientCreditsError(CreditGuardError):
    """Raised when a reservation would exceed the user's available balance.

    Carries the numbers a client needs to render an actionable message.
    """

    def __init__(self, user_id: str, required: int, available, balance):
        self.user_id = user_id
        self.required = required
        self.available = available
        self.balance = balance
        super().__init__(
            f"Insufficient credits for reservation. "
            f"Required: {required}, available: {available}, balance: {balance}"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Structured payload for user-facing error responses."""
        return {
            "error": "insufficient_credits",
            "user_id": self.user_id,
            "credits_required": self.required,
            "credits_available": float(self.available),
            "current_balance": float(self.balance),
            "message": str(self),
        }


class TrackerNotFoundError(CreditGuardError, LookupError):
    """Raised when an operation references an unknown tracker."""

    def __init__(self, tracker_id: str):
        self.tracker_id = tracker_id
        super().__init__(f"Tracker not found: {tracker_id}")


class InvalidStateError(CreditGuardError):
    """Raised when an operation is not allowed in the tracker's current state."""

    def __init__(self, tracker_id: str, status: str, operation: str):
        self.tracker_id = tracker_id
        self.status = status
        super().__init__(f"Cannot {operation} tracker {tracker_id} in state: {status}")


class TrackerLimitError(CreditGuardError):
    """Raised when the concurrent tracker safety cap is reached."""


class ExtractionError(CreditGuardError):
    """Raised when no usage data can be located in a provider response."""


class UnsupportedProviderError(CreditGuardError, ValueError):
    """Raised for a provider name with no registered adapter."""


class UnknownModelError(CreditGuardError, LookupError):
    """Raised when no pricing row exists for a model."""

    def __init__(self, model: str, provider: str):
        self.model = model
        self.provider = provider
        super().__init__(f"No pricing for model {model} ({provider})")


class ReservationNotFoundError(CreditGuardError, LookupError):
    """Raised when a reservation id does not exist."""


class InvalidReservationStateError(CreditGuardError):
    """Raised on settle/cancel of a reservation that is no longer active."""

    def __init__(self, reservation_id: str, status: Optional[str], operation: str):
        self.reservation_id = reservation_id
        self.status = status
        super().__init__(
            f"Cannot {operation} reservation {reservation_id} with status: {status}"
        )


class UnknownUserError(CreditGuardError, LookupError):
    """Raised when the ledger has no account for a user id."""
