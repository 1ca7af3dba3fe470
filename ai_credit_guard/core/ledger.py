"""
Credit ledger: estimate, reserve, settle, cancel.

A reservation is a hold against the user's available balance
(balance minus all active holds). It never touches the stored balance;
settlement performs the only debit, of exactly the chargeable credits.
"""

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

import structlog

from ai_credit_guard.config.loader import LedgerConfig
from ai_credit_guard.storage.models import (
    Reservation,
    ReservationContext,
    ReservationStatus,
    TokenUsageRecord,
)
from ai_credit_guard.storage.repository import BalanceChange, CreditStore

from .errors import (
    InsufficientCreditsError,
    InvalidReservationStateError,
    ReservationNotFoundError,
    UnknownModelError,
    ValidationError,
)
from .estimator import EstimationOptions, TokenEstimator
from .pricing import (
    CreditCalculation,
    ModelPricing,
    calculate_credits_from_usage,
    calculate_user_chargeable_credits,
    to_decimal,
)
from .recovery import ErrorRecovery, RecoveryContext
from .token_counter import TokenUsage
from .tokenizer import TokenCounter

logger = structlog.get_logger()


@dataclass(frozen=True)
class CreditEstimate:
    """Pre-flight credit estimate for a message."""
    input_tokens: int
    estimated_output_tokens: int
    input_cost_usd: Decimal
    output_cost_usd: Decimal
    total_cost_usd: Decimal
    credits_needed: Decimal
    credits_to_charge: int
    buffer_multiplier: float
    token_count_method: str
    confidence: str
    is_exact: bool = False
    error_recovery: bool = False

    @property
    def estimated_tokens(self) -> int:
        return self.input_tokens + self.estimated_output_tokens

    @property
    def reservation_credits(self) -> int:
        """Whole credits to hold for this call; never less than 1."""
        return max(1, self.credits_to_charge)


@dataclass(frozen=True)
class AccuracyMetrics:
    """How close the estimate was to the real token count."""
    estimated_tokens: int
    actual_tokens: int
    accuracy: Optional[float]  # actual / estimated
    percentage_error: Optional[float]
    accuracy_category: str
    estimation_method: str


@dataclass(frozen=True)
class Settlement:
    reservation_id: str
    user_id: str
    credits_reserved: int
    credits_charged: int
    credits_refunded: int
    previous_balance: Decimal
    new_balance: Decimal
    settlement_type: str  # "completed" or "exceeded"
    accuracy_metrics: AccuracyMetrics
    credits_uncollected: Decimal = Decimal("0")


@dataclass(frozen=True)
class Cancellation:
    reservation_id: str
    user_id: str
    credits_refunded: int
    reason: str


def categorize_accuracy(accuracy: float) -> str:
    if 0.9 <= accuracy <= 1.1:
        return "excellent"
    if 0.8 <= accuracy <= 1.2:
        return "good"
    if 0.7 <= accuracy <= 1.3:
        return "fair"
    return "poor"


def calculate_accuracy_metrics(estimated_tokens: int, actual_tokens: int,
                               estimation_method: Optional[str]) -> AccuracyMetrics:
    method = estimation_method or "unknown"
    if not estimated_tokens:
        return AccuracyMetrics(0, actual_tokens, None, None, "unknown", method)

    accuracy = actual_tokens / estimated_tokens
    percentage_error = abs(actual_tokens - estimated_tokens) / estimated_tokens * 100
    return AccuracyMetrics(
        estimated_tokens=estimated_tokens,
        actual_tokens=actual_tokens,
        accuracy=round(accuracy, 4),
        percentage_error=round(percentage_error, 2),
        accuracy_category=categorize_accuracy(accuracy),
        estimation_method=method,
    )


class CreditLedger:
    """Reservation-based credit accounting over a CreditStore.

    Reserve, settle and cancel are serialized per user with an in-process
    lock; the store's compare-and-set on reservation status keeps settle,
    cancel and expire mutually exclusive across processes as well.
    """

    def __init__(
        self,
        store: CreditStore,
        config: Optional[LedgerConfig] = None,
        estimator: Optional[TokenEstimator] = None,
        recovery: Optional[ErrorRecovery] = None,
        clock: Callable[[], datetime] = datetime.now,
        counter: Optional[TokenCounter] = None,
    ):
        self.store = store
        self.config = config or LedgerConfig()
        self.estimator = estimator or TokenEstimator()
        self.counter = counter or TokenCounter(self.estimator)
        self.recovery = recovery or ErrorRecovery(self.estimator)
        self._clock = clock
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    # Pricing and credit math

    def get_model_pricing(self, model: str, provider: str) -> ModelPricing:
        """Pricing row for a model.

        Raises:
            UnknownModelError: If no pricing row exists
        """
        pricing = self.store.get_pricing(model, provider)
        if pricing is None:
            raise UnknownModelError(model, provider)
        return pricing

    def calculate_credits_from_usage(self, usage: TokenUsage, pricing: ModelPricing) -> CreditCalculation:
        return calculate_credits_from_usage(usage, pricing, self.config.credit_unit_usd)

    @staticmethod
    def calculate_user_chargeable_credits(actual_credits) -> int:
        return calculate_user_chargeable_credits(actual_credits)

    def estimate_message_credits(
        self,
        content: Optional[str],
        model: str,
        provider: str,
        options: Optional[Mapping[str, Any]] = None,
        buffer_multiplier: Optional[float] = None,
    ) -> CreditEstimate:
        """Estimate the credits a message will cost before it is sent.

        Token counting runs under the error recovery policy, so a failing
        tokenizer or count endpoint is retried or degrades to a fallback
        estimate instead of raising. An unknown model still raises, since
        no price can be put on it.

        Args:
            content: User message text
            model: Model name
            provider: Provider name
            options: system_prompt, conversation_history, attachments
            buffer_multiplier: Overrides the configured buffer

        Returns:
            CreditEstimate with credits_to_charge = ceil(credits_needed * buffer)
        """
        buffer = self.config.buffer_multiplier if buffer_multiplier is None else buffer_multiplier
        if buffer < 1:
            raise ValidationError("buffer_multiplier must be >= 1")

        estimation_options = EstimationOptions.from_mapping(options)
        estimate = self.recovery.run_with_recovery(
            lambda: self.counter.count_tokens(content, provider, model, estimation_options),
            RecoveryContext(provider, model, content, estimation_options),
        )

        pricing = self.get_model_pricing(model, provider)
        calculation = self.calculate_credits_from_usage(
            TokenUsage(estimate.input_tokens, estimate.estimated_output_tokens,
                       is_estimated=True, estimation_method=estimate.method),
            pricing,
        )
        credits_to_charge = calculate_user_chargeable_credits(
            calculation.actual_credits * to_decimal(buffer)
        )

        return CreditEstimate(
            input_tokens=estimate.input_tokens,
            estimated_output_tokens=estimate.estimated_output_tokens,
            input_cost_usd=calculation.input_cost_usd,
            output_cost_usd=calculation.output_cost_usd,
            total_cost_usd=calculation.total_cost_usd,
            credits_needed=calculation.actual_credits,
            credits_to_charge=credits_to_charge,
            buffer_multiplier=buffer,
            token_count_method=estimate.method,
            confidence=estimate.confidence,
            is_exact=estimate.is_exact,
            error_recovery=estimate.error_recovery,
        )

    # Balances

    def get_available_balance(self, user_id: str) -> Decimal:
        """Balance minus all active holds."""
        return self.store.get_balance(user_id) - self.store.sum_active_reservations(user_id)

    def grant_credits(self, user_id: str, amount, reason: str = "Admin grant") -> BalanceChange:
        """Top up a user's balance, creating the account if needed."""
        amount = to_decimal(amount)
        if amount <= 0:
            raise ValidationError("Grant amount must be positive")
        self.store.create_account(user_id)
        with self._user_lock(user_id):
            change = self.store.credit(user_id, amount, reason)
        logger.info("Credits granted", user_id=user_id, amount=str(amount),
                    new_balance=str(change.balance_after))
        return change

    # Reservations

    def reserve_credits(
        self,
        user_id: str,
        amount: int,
        context: ReservationContext,
        expiry_minutes: Optional[float] = None,
    ) -> Reservation:
        """Place a hold of `amount` credits against the user's available balance.

        Raises:
            ValidationError: If the user id or amount is invalid
            InsufficientCreditsError: If amount exceeds the available balance
            UnknownUserError: If the user has no account
        """
        if not user_id or not isinstance(user_id, str):
            raise ValidationError("Invalid user ID")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError("Invalid credit amount")
        if amount > self.config.max_reservation_credits:
            raise ValidationError("Credit reservation amount exceeds safety limit")

        minutes = self.config.reservation_expiry_minutes if expiry_minutes is None else expiry_minutes
        if minutes < 0:
            raise ValidationError("expiry_minutes cannot be negative")
        with self._user_lock(user_id):
            balance = self.store.get_balance(user_id)
            available = balance - self.store.sum_active_reservations(user_id)
            if amount > available:
                raise InsufficientCreditsError(user_id, amount, available, balance)

            now = self._clock()
            reservation = Reservation(
                id=str(uuid.uuid4()),
                user_id=user_id,
                credits_reserved=amount,
                context=context,
                created_at=now,
                expires_at=now + timedelta(minutes=minutes),
            )
            if not self.store.create_reservation_row(reservation):
                # Another process took the headroom between read and write
                balance = self.store.get_balance(user_id)
                available = balance - self.store.sum_active_reservations(user_id)
                raise InsufficientCreditsError(user_id, amount, available, balance)

        logger.info(
            "Credits reserved",
            user_id=user_id,
            reservation_id=reservation.id,
            credits_reserved=amount,
            available_before=str(available),
            expires_at=reservation.expires_at.isoformat(),
        )
        return reservation

    def _get_active_reservation(self, reservation_id: str, operation: str) -> Reservation:
        reservation = self.store.get_reservation(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(f"Reservation not found: {reservation_id}")
        if reservation.status != ReservationStatus.ACTIVE:
            raise InvalidReservationStateError(reservation_id, reservation.status.value, operation)
        return reservation

    def _lost_transition(self, reservation_id: str, operation: str) -> InvalidReservationStateError:
        current = self.store.get_reservation(reservation_id)
        status = current.status.value if current else None
        return InvalidReservationStateError(reservation_id, status, operation)

    def settle_reservation(
        self,
        reservation_id: str,
        chargeable_credits: int,
        usage: TokenUsage,
        calculation: Optional[CreditCalculation] = None,
    ) -> Settlement:
        """Close a reservation against actual usage.

        Debits exactly `chargeable_credits` and appends one token usage row,
        atomically with the status change. If the balance cannot cover a
        charge that exceeded the hold, the balance stops at zero and the
        remainder is reported as uncollected.

        Args:
            reservation_id: Active reservation to settle
            chargeable_credits: Whole credits to debit
            usage: Actual (or estimated) token usage
            calculation: Cost breakdown; computed from stored pricing if omitted

        Raises:
            ReservationNotFoundError: If the reservation does not exist
            InvalidReservationStateError: If it is no longer active
            ValueError: If chargeable_credits disagrees with the usage cost
        """
        if isinstance(chargeable_credits, bool) or not isinstance(chargeable_credits, int) \
                or chargeable_credits < 0:
            raise ValidationError("chargeable_credits must be a non-negative integer")

        reservation = self._get_active_reservation(reservation_id, "settle")
        ctx = reservation.context
        if calculation is None:
            calculation = self.calculate_credits_from_usage(
                usage, self.get_model_pricing(ctx.model, ctx.provider)
            )
        if calculation.chargeable_credits != chargeable_credits:
            raise ValueError(
                f"chargeable_credits {chargeable_credits} does not match usage cost "
                f"{calculation.actual_credits}"
            )

        now = self._clock()
        record = TokenUsageRecord(
            user_id=reservation.user_id,
            provider=ctx.provider,
            model=ctx.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            input_cost_usd=calculation.input_cost_usd,
            output_cost_usd=calculation.output_cost_usd,
            total_cost_usd=calculation.total_cost_usd,
            credits_used=calculation.actual_credits,
            credits_charged=chargeable_credits,
            conversation_id=ctx.conversation_id,
            message_id=ctx.message_id,
            reservation_id=reservation.id,
            is_estimated=usage.is_estimated,
            created_at=now,
        )

        with self._user_lock(reservation.user_id):
            change = self.store.settle_reservation_rows(
                reservation.id, Decimal(chargeable_credits), record, now
            )
        if change is None:
            raise self._lost_transition(reservation_id, "settle")

        reserved = reservation.credits_reserved
        exceeded = chargeable_credits > reserved
        if exceeded:
            logger.warning(
                "Usage exceeded reservation",
                reservation_id=reservation.id,
                credits_reserved=reserved,
                credits_charged=chargeable_credits,
            )
        if change.amount_uncollected > 0:
            logger.warning(
                "Settlement exceeded balance",
                reservation_id=reservation.id,
                user_id=reservation.user_id,
                credits_uncollected=str(change.amount_uncollected),
            )

        accuracy = calculate_accuracy_metrics(
            ctx.estimated_tokens, usage.total_tokens, ctx.token_count_method
        )
        logger.info(
            "Reservation settled",
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            credits_reserved=reserved,
            credits_charged=chargeable_credits,
            new_balance=str(change.balance_after),
            accuracy_category=accuracy.accuracy_category,
        )
        return Settlement(
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            credits_reserved=reserved,
            credits_charged=chargeable_credits,
            credits_refunded=max(0, reserved - chargeable_credits),
            previous_balance=change.balance_before,
            new_balance=change.balance_after,
            settlement_type="exceeded" if exceeded else "completed",
            accuracy_metrics=accuracy,
            credits_uncollected=change.amount_uncollected,
        )

    def cancel_reservation(self, reservation_id: str, reason: str = "Operation cancelled") -> Cancellation:
        """Release a hold entirely, with no debit.

        Raises:
            ReservationNotFoundError: If the reservation does not exist
            InvalidReservationStateError: If it is no longer active
        """
        reservation = self._get_active_reservation(reservation_id, "cancel")
        with self._user_lock(reservation.user_id):
            released = self.store.update_reservation_status(
                reservation.id, ReservationStatus.CANCELLED, reason, self._clock()
            )
        if not released:
            raise self._lost_transition(reservation_id, "cancel")

        logger.info(
            "Reservation cancelled",
            reservation_id=reservation.id,
            user_id=reservation.user_id,
            credits_refunded=reservation.credits_reserved,
            reason=reason,
        )
        return Cancellation(reservation.id, reservation.user_id, reservation.credits_reserved, reason)

    def get_active_reservations(self, user_id: str, limit: int = 50) -> List[Reservation]:
        return self.store.list_active_reservations(user_id, limit)

    def expire_reservations(self, batch_size: int = 100) -> int:
        """Expire active reservations past their expiry time.

        A reservation settled or cancelled concurrently is skipped.

        Returns:
            Number of reservations expired
        """
        now = self._clock()
        expired = 0
        for reservation in self.store.list_expired_reservations(now, batch_size):
            with self._user_lock(reservation.user_id):
                changed = self.store.update_reservation_status(
                    reservation.id, ReservationStatus.EXPIRED,
                    "Reservation expired - credits released", now,
                )
            if changed:
                expired += 1
                logger.info(
                    "Reservation expired",
                    reservation_id=reservation.id,
                    user_id=reservation.user_id,
                    credits_released=reservation.credits_reserved,
                )
        return expired

    def get_usage_stats(self, user_id: str, recent_limit: int = 10) -> Dict[str, Any]:
        """Balance, holds and usage totals for one user."""
        balance = self.store.get_balance(user_id)
        held = self.store.sum_active_reservations(user_id)
        totals = self.store.get_usage_totals(user_id)
        recent = self.store.fetch_token_usage(user_id, recent_limit)
        return {
            "current_balance": balance,
            "available_balance": balance - held,
            "reserved_credits": held,
            **totals,
            "recent_usage": [
                {
                    "provider": r.provider,
                    "model": r.model,
                    "tokens": r.total_tokens,
                    "cost_usd": r.total_cost_usd,
                    "credits_used": r.credits_used,
                    "credits_charged": r.credits_charged,
                    "is_estimated": r.is_estimated,
                    "created_at": r.created_at,
                }
                for r in recent
            ],
        }
