"""
Unit tests for the credit ledger.

Covers estimation, the reserve/settle/cancel/expire lifecycle and the
no-overspend guarantee under concurrent reservations.
"""

import threading
from decimal import Decimal
from unittest.mock import Mock

import pytest

from ai_credit_guard.config.loader import LedgerConfig
from ai_credit_guard.core.errors import (
    InsufficientCreditsError,
    InvalidReservationStateError,
    ReservationNotFoundError,
    UnknownModelError,
    UnknownUserError,
    ValidationError,
)
from ai_credit_guard.core.estimator import TokenEstimator
from ai_credit_guard.core.ledger import (
    CreditLedger,
    calculate_accuracy_metrics,
    categorize_accuracy,
)
from ai_credit_guard.core.recovery import ErrorRecovery
from ai_credit_guard.core.token_counter import TokenUsage
from ai_credit_guard.core.tokenizer import TokenCounter
from ai_credit_guard.storage.models import ReservationContext, ReservationStatus

from conftest import WordEncoding

SCENARIO = ReservationContext(
    model="scenario-model",
    provider="openai",
    estimated_tokens=1000,
    token_count_method="enhanced-openai",
)


class TestEstimateMessageCredits:

    def test_gpt4o_estimate(self, ledger):
        estimate = ledger.estimate_message_credits("Hello world", "gpt-4o", "openai")

        # 2 words + 4 message overhead + 3 reply priming, output round(9 * 0.75)
        assert estimate.input_tokens == 9
        assert estimate.estimated_output_tokens == 7
        assert estimate.estimated_tokens == 16
        assert estimate.token_count_method == "tiktoken"
        assert estimate.confidence == "high"
        assert estimate.is_exact is True
        assert estimate.total_cost_usd == Decimal("0.0000925")
        assert estimate.credits_needed == Decimal("0.0925")
        assert estimate.credits_to_charge == 1
        assert estimate.reservation_credits == 1
        assert estimate.buffer_multiplier == 1.2
        assert estimate.error_recovery is False

    def test_buffer_applied_before_rounding(self, ledger):
        content = "word " * 950
        estimate = ledger.estimate_message_credits(content, "scenario-model", "openai",
                                                   buffer_multiplier=2.0)
        assert estimate.input_tokens == 957
        assert estimate.estimated_output_tokens == 718
        assert estimate.credits_needed == Decimal("1.0288")
        assert estimate.credits_to_charge == 3

    def test_buffer_below_one_rejected(self, ledger):
        with pytest.raises(ValidationError, match="buffer_multiplier"):
            ledger.estimate_message_credits("Hello", "gpt-4o", "openai", buffer_multiplier=0.5)

    def test_unknown_model(self, ledger):
        with pytest.raises(UnknownModelError, match="No pricing for model gpt-9"):
            ledger.estimate_message_credits("Hello", "gpt-9", "openai")

    def test_options_counted(self, ledger):
        plain = ledger.estimate_message_credits("Hello world", "gpt-4o", "openai")
        rich = ledger.estimate_message_credits(
            "Hello world", "gpt-4o", "openai",
            {"system_prompt": "You are a helpful assistant.", "attachments": ["a.png"]},
        )
        assert rich.input_tokens > plain.input_tokens

    def test_failing_estimator_recovers(self, store):
        broken = Mock(spec=TokenEstimator)
        broken.estimate.side_effect = RuntimeError("Invalid API key")
        ledger = CreditLedger(store, estimator=broken,
                              recovery=ErrorRecovery(TokenEstimator(), sleep=lambda seconds: None))

        estimate = ledger.estimate_message_credits("Hello world", "claude-3-5-haiku-20241022", "anthropic")

        assert estimate.error_recovery is True
        assert estimate.input_tokens == 12
        assert estimate.token_count_method == "enhanced-anthropic"
        broken.estimate.assert_called_once()

    def test_failing_encoder_falls_back_without_retry(self, store):
        def broken_loader(model):
            raise RuntimeError("Invalid API key")

        sleeps = []
        ledger = CreditLedger(store, counter=TokenCounter(encoding_loader=broken_loader),
                              recovery=ErrorRecovery(sleep=sleeps.append))

        estimate = ledger.estimate_message_credits("Hello world", "gpt-4o", "openai")

        assert estimate.error_recovery is True
        assert estimate.is_exact is False
        assert estimate.input_tokens == 13
        assert estimate.estimated_output_tokens == 10
        assert estimate.token_count_method == "enhanced-openai"
        assert sleeps == []

    def test_encoder_network_error_retried_then_estimated(self, store):
        loader = Mock(side_effect=RuntimeError("connection reset by peer"))
        sleeps = []
        ledger = CreditLedger(store, counter=TokenCounter(encoding_loader=loader),
                              recovery=ErrorRecovery(sleep=sleeps.append))

        estimate = ledger.estimate_message_credits("Hello world", "gpt-4o", "openai")

        assert loader.call_count == 3
        assert sleeps == [0.5, 1.0]
        assert estimate.error_recovery is True
        assert estimate.token_count_method == "enhanced-openai"

    def test_encoder_recovers_on_retry(self, store):
        loader = Mock(side_effect=[RuntimeError("request timed out"), WordEncoding()])
        ledger = CreditLedger(store, counter=TokenCounter(encoding_loader=loader),
                              recovery=ErrorRecovery(sleep=lambda seconds: None))

        estimate = ledger.estimate_message_credits("Hello world", "gpt-4o", "openai")

        assert estimate.token_count_method == "tiktoken"
        assert estimate.is_exact is True
        assert estimate.error_recovery is False
        assert estimate.input_tokens == 9


class TestReserveCredits:

    def test_reserve_holds_without_debit(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)

        assert reservation.credits_reserved == 10
        assert reservation.status == ReservationStatus.ACTIVE
        assert store.get_balance("alice") == Decimal("100")
        assert ledger.get_available_balance("alice") == Decimal("90")
        assert [r.id for r in ledger.get_active_reservations("alice")] == [reservation.id]

    def test_expiry_from_config(self, ledger, clock):
        reservation = ledger.reserve_credits("alice", 1, SCENARIO)
        assert reservation.created_at == clock.now
        assert (reservation.expires_at - reservation.created_at).total_seconds() == 15 * 60

        custom = ledger.reserve_credits("alice", 1, SCENARIO, expiry_minutes=2)
        assert (custom.expires_at - custom.created_at).total_seconds() == 120

    def test_zero_expiry_is_honoured(self, ledger, clock):
        reservation = ledger.reserve_credits("alice", 1, SCENARIO, expiry_minutes=0)
        assert reservation.expires_at == reservation.created_at

        clock.advance(seconds=1)
        assert ledger.expire_reservations() == 1
        assert ledger.get_available_balance("alice") == Decimal("100")

    def test_negative_expiry_rejected(self, ledger):
        with pytest.raises(ValidationError, match="expiry_minutes"):
            ledger.reserve_credits("alice", 1, SCENARIO, expiry_minutes=-1)

    def test_insufficient_credits(self, ledger):
        ledger.reserve_credits("alice", 10, SCENARIO)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            ledger.reserve_credits("alice", 95, SCENARIO)

        error = exc_info.value
        assert error.required == 95
        assert error.available == 90
        assert error.balance == 100
        payload = error.to_dict()
        assert payload["error"] == "insufficient_credits"
        assert payload["credits_available"] == 90.0
        assert len(ledger.get_active_reservations("alice")) == 1

    def test_exact_available_balance_can_be_reserved(self, ledger):
        ledger.reserve_credits("alice", 100, SCENARIO)
        assert ledger.get_available_balance("alice") == 0

    @pytest.mark.parametrize("amount", [0, -1, 1.5, True, "10"])
    def test_invalid_amount(self, ledger, amount):
        with pytest.raises(ValidationError, match="Invalid credit amount"):
            ledger.reserve_credits("alice", amount, SCENARIO)

    def test_safety_limit(self, ledger):
        ledger.grant_credits("alice", 5000)
        with pytest.raises(ValidationError, match="safety limit"):
            ledger.reserve_credits("alice", 1001, SCENARIO)

    def test_safety_limit_from_config(self, store, clock):
        ledger = CreditLedger(store, LedgerConfig(max_reservation_credits=5), clock=clock)
        ledger.grant_credits("bob", 100)
        with pytest.raises(ValidationError, match="safety limit"):
            ledger.reserve_credits("bob", 6, SCENARIO)

    def test_invalid_user_id(self, ledger):
        with pytest.raises(ValidationError, match="Invalid user ID"):
            ledger.reserve_credits("", 1, SCENARIO)

    def test_unknown_user(self, ledger):
        with pytest.raises(UnknownUserError):
            ledger.reserve_credits("nobody", 1, SCENARIO)

    def test_concurrent_reservations_never_overspend(self, ledger, store):
        barrier = threading.Barrier(20)
        granted = []
        denied = []

        def reserve():
            barrier.wait()
            try:
                granted.append(ledger.reserve_credits("alice", 10, SCENARIO))
            except InsufficientCreditsError:
                denied.append(1)

        threads = [threading.Thread(target=reserve) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(granted) == 10
        assert len(denied) == 10
        assert store.sum_active_reservations("alice") == 100
        assert ledger.get_available_balance("alice") == 0

    def test_two_ledgers_share_the_store(self, ledger, store, clock):
        other = CreditLedger(store, clock=clock)
        ledger.reserve_credits("alice", 60, SCENARIO)
        with pytest.raises(InsufficientCreditsError):
            other.reserve_credits("alice", 50, SCENARIO)


class TestSettleReservation:

    def test_settle_scenario(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        usage = TokenUsage(400, 567)
        calculation = ledger.calculate_credits_from_usage(
            usage, ledger.get_model_pricing("scenario-model", "openai")
        )
        assert calculation.actual_credits == Decimal("0.4567")
        assert calculation.chargeable_credits == 1

        settlement = ledger.settle_reservation(reservation.id, 1, usage, calculation)

        assert settlement.credits_reserved == 10
        assert settlement.credits_charged == 1
        assert settlement.credits_refunded == 9
        assert settlement.previous_balance == Decimal("100")
        assert settlement.new_balance == Decimal("99")
        assert settlement.settlement_type == "completed"
        assert settlement.credits_uncollected == 0
        assert store.get_balance("alice") == Decimal("99")
        assert ledger.get_available_balance("alice") == Decimal("99")
        assert store.get_reservation(reservation.id).status == ReservationStatus.SETTLED

        rows = store.fetch_token_usage("alice")
        assert len(rows) == 1
        assert rows[0].reservation_id == reservation.id
        assert rows[0].credits_used == Decimal("0.4567")
        assert rows[0].credits_charged == 1
        assert rows[0].total_tokens == 967

    def test_settle_computes_calculation(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        settlement = ledger.settle_reservation(reservation.id, 1, TokenUsage(400, 567))
        assert settlement.new_balance == Decimal("99")

    def test_accuracy_metrics(self, ledger):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        settlement = ledger.settle_reservation(reservation.id, 1, TokenUsage(400, 567))

        metrics = settlement.accuracy_metrics
        assert metrics.estimated_tokens == 1000
        assert metrics.actual_tokens == 967
        assert metrics.accuracy == 0.967
        assert metrics.percentage_error == 3.3
        assert metrics.accuracy_category == "excellent"
        assert metrics.estimation_method == "enhanced-openai"

    def test_mismatched_charge_rejected(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        with pytest.raises(ValueError, match="does not match usage cost"):
            ledger.settle_reservation(reservation.id, 5, TokenUsage(400, 567))
        assert store.get_reservation(reservation.id).status == ReservationStatus.ACTIVE

    @pytest.mark.parametrize("amount", [-1, 1.0, None])
    def test_invalid_charge_rejected(self, ledger, amount):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        with pytest.raises(ValidationError):
            ledger.settle_reservation(reservation.id, amount, TokenUsage(400, 567))

    def test_double_settle_rejected(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        ledger.settle_reservation(reservation.id, 1, TokenUsage(400, 567))

        with pytest.raises(InvalidReservationStateError, match="status: settled"):
            ledger.settle_reservation(reservation.id, 1, TokenUsage(400, 567))

        assert store.get_balance("alice") == Decimal("99")
        assert len(store.fetch_token_usage("alice")) == 1

    def test_exceeded_reservation(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 1, SCENARIO)
        settlement = ledger.settle_reservation(reservation.id, 3, TokenUsage(3000, 0))

        assert settlement.settlement_type == "exceeded"
        assert settlement.credits_refunded == 0
        assert store.get_balance("alice") == Decimal("97")

    def test_overdraft_clamped_and_reported(self, ledger, store):
        ledger.grant_credits("bob", 2)
        reservation = ledger.reserve_credits("bob", 2, SCENARIO)

        settlement = ledger.settle_reservation(reservation.id, 5, TokenUsage(5000, 0))

        assert settlement.new_balance == Decimal("0")
        assert settlement.credits_uncollected == Decimal("3")
        assert store.get_balance("bob") == Decimal("0")

    def test_zero_usage_charges_nothing(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 5, SCENARIO)
        settlement = ledger.settle_reservation(reservation.id, 0, TokenUsage(0, 0))
        assert settlement.credits_refunded == 5
        assert store.get_balance("alice") == Decimal("100")

    def test_not_found(self, ledger):
        with pytest.raises(ReservationNotFoundError):
            ledger.settle_reservation("missing", 1, TokenUsage(400, 567))

    def test_lost_race_reports_current_status(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        # Another process cancels between the status read and the write
        original = store.settle_reservation_rows

        def cancel_first(*args, **kwargs):
            store.update_reservation_status(reservation.id, ReservationStatus.CANCELLED, "race",
                                            reservation.created_at)
            return original(*args, **kwargs)

        store.settle_reservation_rows = cancel_first
        with pytest.raises(InvalidReservationStateError, match="status: cancelled"):
            ledger.settle_reservation(reservation.id, 1, TokenUsage(400, 567))
        assert store.get_balance("alice") == Decimal("100")


class TestCancelAndExpire:

    def test_cancel_releases_hold(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)

        cancellation = ledger.cancel_reservation(reservation.id, "User stopped")

        assert cancellation.credits_refunded == 10
        assert cancellation.reason == "User stopped"
        assert store.get_balance("alice") == Decimal("100")
        assert ledger.get_available_balance("alice") == Decimal("100")
        stored = store.get_reservation(reservation.id)
        assert stored.status == ReservationStatus.CANCELLED
        assert stored.reason == "User stopped"

    def test_settle_after_cancel_rejected(self, ledger, store):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        ledger.cancel_reservation(reservation.id)

        with pytest.raises(InvalidReservationStateError):
            ledger.settle_reservation(reservation.id, 1, TokenUsage(400, 567))
        assert store.fetch_token_usage("alice") == []

    def test_cancel_after_settle_rejected(self, ledger):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        ledger.settle_reservation(reservation.id, 1, TokenUsage(400, 567))

        with pytest.raises(InvalidReservationStateError):
            ledger.cancel_reservation(reservation.id)

    def test_cancel_not_found(self, ledger):
        with pytest.raises(ReservationNotFoundError):
            ledger.cancel_reservation("missing")

    def test_expire(self, ledger, store, clock):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        long_lived = ledger.reserve_credits("alice", 5, SCENARIO, expiry_minutes=60)

        assert ledger.expire_reservations() == 0
        clock.advance(minutes=16)
        assert ledger.expire_reservations() == 1

        stored = store.get_reservation(reservation.id)
        assert stored.status == ReservationStatus.EXPIRED
        assert stored.reason == "Reservation expired - credits released"
        assert store.get_reservation(long_lived.id).status == ReservationStatus.ACTIVE
        assert ledger.get_available_balance("alice") == Decimal("95")

        with pytest.raises(InvalidReservationStateError):
            ledger.cancel_reservation(reservation.id)
        assert ledger.expire_reservations() == 0

    def test_expire_batch_size(self, ledger, clock):
        for _ in range(3):
            ledger.reserve_credits("alice", 1, SCENARIO)
        clock.advance(minutes=20)
        assert ledger.expire_reservations(batch_size=2) == 2
        assert ledger.expire_reservations(batch_size=2) == 1


class TestGrantsAndStats:

    def test_grant_creates_account(self, ledger, store):
        change = ledger.grant_credits("carol", Decimal("12.5"), "Welcome bonus")
        assert change.balance_before == Decimal("0")
        assert change.balance_after == Decimal("12.5")
        assert store.fetch_audit_log("carol")[0]["reason"] == "Welcome bonus"

    @pytest.mark.parametrize("amount", [0, -5])
    def test_grant_must_be_positive(self, ledger, amount):
        with pytest.raises(ValidationError, match="Grant amount must be positive"):
            ledger.grant_credits("alice", amount)

    def test_usage_stats(self, ledger):
        reservation = ledger.reserve_credits("alice", 10, SCENARIO)
        ledger.settle_reservation(reservation.id, 1, TokenUsage(400, 567))
        ledger.reserve_credits("alice", 4, SCENARIO)

        stats = ledger.get_usage_stats("alice")

        assert stats["current_balance"] == Decimal("99")
        assert stats["reserved_credits"] == 4
        assert stats["available_balance"] == Decimal("95")
        assert stats["total_requests"] == 1
        assert stats["total_tokens"] == 967
        assert stats["total_credits_charged"] == 1
        assert stats["total_credits_used"] == Decimal("0.4567")
        assert len(stats["recent_usage"]) == 1
        assert stats["recent_usage"][0]["model"] == "scenario-model"
        assert stats["recent_usage"][0]["is_estimated"] is False


class TestAccuracy:

    @pytest.mark.parametrize("accuracy,category", [
        (1.0, "excellent"),
        (0.9, "excellent"),
        (1.15, "good"),
        (0.75, "fair"),
        (1.3, "fair"),
        (2.0, "poor"),
        (0.5, "poor"),
    ])
    def test_categories(self, accuracy, category):
        assert categorize_accuracy(accuracy) == category

    def test_metrics(self):
        metrics = calculate_accuracy_metrics(100, 110, "enhanced-openai")
        assert metrics.accuracy == 1.1
        assert metrics.percentage_error == 10.0
        assert metrics.accuracy_category == "excellent"

    def test_no_estimate(self):
        metrics = calculate_accuracy_metrics(0, 50, None)
        assert metrics.accuracy is None
        assert metrics.percentage_error is None
        assert metrics.accuracy_category == "unknown"
        assert metrics.estimation_method == "unknown"
