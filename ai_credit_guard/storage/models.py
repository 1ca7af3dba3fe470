"""
Data models for storage layer.

Defines ledger entities: reservations and the append-only token usage audit.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from ai_credit_guard.core.pricing import calculate_user_chargeable_credits


class ReservationStatus(Enum):
    """Lifecycle of a credit hold. Only ACTIVE is non-terminal."""
    ACTIVE = "active"
    SETTLED = "settled"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ReservationContext:
    """What the reserved credits are for."""
    model: str
    provider: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    operation_type: str = "chat_completion"
    estimated_tokens: int = 0
    token_count_method: Optional[str] = None
    buffer_multiplier: Optional[float] = None


@dataclass(frozen=True)
class Reservation:
    """Temporary hold against a user's available balance."""
    id: str
    user_id: str
    credits_reserved: int
    context: ReservationContext
    created_at: datetime
    expires_at: datetime
    status: ReservationStatus = ReservationStatus.ACTIVE
    terminated_at: Optional[datetime] = None
    reason: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.credits_reserved, bool) or not isinstance(self.credits_reserved, int):
            raise ValueError("credits_reserved must be an integer")
        if self.credits_reserved < 1:
            raise ValueError("credits_reserved must be >= 1")


@dataclass(frozen=True)
class TokenUsageRecord:
    """Immutable audit row written once per settled AI call.

    Append-only: once written, these records must never be modified.
    """
    user_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    input_cost_usd: Decimal
    output_cost_usd: Decimal
    total_cost_usd: Decimal
    credits_used: Decimal  # actual, fractional
    credits_charged: int  # billed, whole credits
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    reservation_id: Optional[str] = None
    is_estimated: bool = False
    created_at: Optional[datetime] = None

    def __post_init__(self):
        """Reject rows whose charge does not follow the rounding rule."""
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts cannot be negative")
        expected = calculate_user_chargeable_credits(self.credits_used)
        if self.credits_charged != expected:
            raise ValueError(
                f"credits_charged {self.credits_charged} does not match "
                f"chargeable credits {expected} for usage {self.credits_used}"
            )
