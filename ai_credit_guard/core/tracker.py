"""
Real-time credit tracking for streaming AI responses.

A tracker wraps one reservation for the lifetime of a streamed reply:
chunks update a live output-token estimate and credit cost, completion
settles the reservation against the final count, cancellation releases it.

State machine:
    active -> completing -> completed
    active -> cancelling -> cancelled
    active | completing | cancelling -> failed
"""

import heapq
import itertools
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import structlog

from ai_credit_guard.config.loader import TrackerConfig
from ai_credit_guard.storage.models import ReservationContext

from .errors import (
    InvalidReservationStateError,
    InvalidStateError,
    TrackerLimitError,
    TrackerNotFoundError,
    ValidationError,
)
from .estimator import EstimationOptions
from .ledger import AccuracyMetrics, CreditEstimate, CreditLedger, Settlement
from .pricing import ModelPricing
from .token_counter import TokenUsage, is_token_count

logger = structlog.get_logger()

STALE_CLEANUP_REASON = "Stale tracker cleanup"


class TrackerState(Enum):
    ACTIVE = "active"
    COMPLETING = "completing"
    COMPLETED = "completed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TrackerState.COMPLETED, TrackerState.CANCELLED, TrackerState.FAILED)


@dataclass(frozen=True)
class TrackingConfig:
    """What to track: the request that is about to be streamed."""
    user_id: str
    content: str
    model: str
    provider: str
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    system_prompt: Optional[str] = None
    conversation_history: List[Any] = field(default_factory=list)
    attachments: List[Any] = field(default_factory=list)
    operation_type: str = "chat_completion"
    expiration_minutes: Optional[float] = None
    buffer_multiplier: Optional[float] = None

    def __post_init__(self):
        for name in ("user_id", "content", "model", "provider"):
            value = getattr(self, name)
            if value is None or value == "":
                raise ValidationError(f"Missing required field: {name}")
            if not isinstance(value, str):
                raise ValidationError(f"{name} must be a string")

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "TrackingConfig":
        allowed = {f.name for f in fields(cls)}
        unknown = set(config.keys()) - allowed
        if unknown:
            raise ValidationError(f"Unknown tracking config keys: {unknown}")
        values = dict(config)
        for name in ("user_id", "content", "model", "provider"):
            values.setdefault(name, None)
        return cls(**values)

    def estimation_options(self) -> EstimationOptions:
        return EstimationOptions(
            system_prompt=self.system_prompt,
            conversation_history=list(self.conversation_history),
            attachments=list(self.attachments),
        )


@dataclass(frozen=True)
class TokenCounts:
    input: int
    output: int

    @property
    def total(self) -> int:
        return self.input + self.output


@dataclass
class Tracker:
    """Mutable state of one streamed call, owned by the request serving it."""
    tracker_id: str
    user_id: str
    model: str
    provider: str
    conversation_id: Optional[str]
    message_id: Optional[str]
    estimate: CreditEstimate
    pricing: ModelPricing
    credits_reserved: int
    start_time: datetime
    last_update_time: datetime
    status: TrackerState = TrackerState.ACTIVE
    output_tokens: int = 0
    credits_used: Decimal = Decimal("0")
    credits_charged: Optional[int] = None
    chunks_received: int = 0
    total_chars: int = 0
    average_chunk_size: float = 0.0
    streaming_rate: float = 0.0  # chars per second
    errors: List[Dict[str, Any]] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    @property
    def reservation_id(self) -> str:
        # One tracker per reservation; they share the id
        return self.tracker_id

    @property
    def input_tokens(self) -> int:
        return self.estimate.input_tokens

    def record_error(self, at: datetime, error: BaseException, kind: str) -> None:
        self.errors.append({"timestamp": at, "error": str(error), "type": kind})


@dataclass(frozen=True)
class TrackingStarted:
    tracker_id: str
    reservation_id: str
    credits_reserved: int
    estimated_tokens: TokenCounts
    expires_at: datetime
    buffer_multiplier: float


@dataclass(frozen=True)
class ChunkUpdate:
    tracker_id: str
    chunks_received: int
    output_tokens_estimated: int
    credits_used: Decimal
    credits_remaining: Decimal
    usage_ratio: float  # percent of the reservation, 2 decimals
    streaming_rate: int
    is_approaching_limit: bool


@dataclass(frozen=True)
class CreditSummary:
    reserved: int
    used: Decimal
    charged: int
    refunded: int


@dataclass(frozen=True)
class StreamingCompletion:
    tracker_id: str
    reservation_id: str
    actual_tokens: TokenCounts
    estimated_tokens: TokenCounts
    credits: CreditSummary
    accuracy_metrics: AccuracyMetrics
    performance: Dict[str, Any]
    settlement: Settlement


@dataclass(frozen=True)
class StreamingCancellation:
    tracker_id: str
    reservation_id: str
    credits_refunded: int
    reason: str


@dataclass(frozen=True)
class SweepResult:
    found: int
    cleaned: int
    errors: List[Dict[str, str]]


class TrackerRegistry:
    """Thread-safe tracker map with delayed eviction and outcome counters.

    Finished trackers stay queryable for a grace period. Due evictions are
    processed on every access and by run_pending(); close() drops
    everything on shutdown.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock
        self._lock = threading.RLock()
        self._trackers: Dict[str, Tracker] = {}
        self._evictions: List[Tuple[datetime, int, str]] = []
        self._sequence = itertools.count()
        self._counters: Dict[Tuple[str, str], int] = {}

    def add(self, tracker: Tracker, limit: int) -> None:
        with self._lock:
            self._run_pending_locked()
            if len(self._trackers) >= limit:
                raise TrackerLimitError("Maximum active trackers exceeded")
            self._trackers[tracker.tracker_id] = tracker

    def get(self, tracker_id: str) -> Optional[Tracker]:
        with self._lock:
            self._run_pending_locked()
            return self._trackers.get(tracker_id)

    def remove(self, tracker_id: str) -> bool:
        with self._lock:
            return self._trackers.pop(tracker_id, None) is not None

    def transition(self, tracker: Tracker, expected: TrackerState, new: TrackerState) -> bool:
        """Move tracker from expected to new status. False if it was not in expected."""
        with self._lock:
            if tracker.status != expected:
                return False
            tracker.status = new
            return True

    def values(self) -> List[Tracker]:
        with self._lock:
            self._run_pending_locked()
            return list(self._trackers.values())

    def __len__(self) -> int:
        with self._lock:
            self._run_pending_locked()
            return len(self._trackers)

    def schedule_eviction(self, tracker_id: str, delay_seconds: float) -> None:
        due = self._clock() + timedelta(seconds=delay_seconds)
        with self._lock:
            heapq.heappush(self._evictions, (due, next(self._sequence), tracker_id))

    def pending_evictions(self) -> int:
        with self._lock:
            return len(self._evictions)

    def _run_pending_locked(self) -> int:
        now = self._clock()
        evicted = 0
        while self._evictions and self._evictions[0][0] <= now:
            _, _, tracker_id = heapq.heappop(self._evictions)
            if self._trackers.pop(tracker_id, None) is not None:
                evicted += 1
        return evicted

    def run_pending(self) -> int:
        """Evict trackers whose grace period is over. Returns the count."""
        with self._lock:
            return self._run_pending_locked()

    def record(self, provider: str, metric: str) -> None:
        with self._lock:
            key = (provider, metric)
            self._counters[key] = self._counters.get(key, 0) + 1

    def counters(self) -> Dict[Tuple[str, str], int]:
        with self._lock:
            return dict(self._counters)

    def close(self) -> int:
        """Drop all trackers and pending evictions. Returns trackers dropped."""
        with self._lock:
            unfinished = [t.tracker_id for t in self._trackers.values() if not t.status.is_terminal]
            dropped = len(self._trackers)
            self._trackers.clear()
            self._evictions.clear()
            self._counters.clear()
        if unfinished:
            logger.warning("Registry closed with unfinished trackers", tracker_ids=unfinished)
        return dropped


class StreamingTracker:
    """Tracks credit usage of streamed responses against a reservation."""

    def __init__(
        self,
        ledger: CreditLedger,
        registry: Optional[TrackerRegistry] = None,
        config: Optional[TrackerConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.ledger = ledger
        self.config = config or TrackerConfig()
        self._clock = clock
        self.registry = registry or TrackerRegistry(clock)

    def _require(self, tracker_id: str) -> Tracker:
        tracker = self.registry.get(tracker_id)
        if tracker is None:
            raise TrackerNotFoundError(tracker_id)
        return tracker

    def start_tracking(self, config: Union[TrackingConfig, Mapping[str, Any]]) -> TrackingStarted:
        """Estimate, reserve and register a tracker for a streamed call.

        No tracker is registered if estimation or reservation fails.

        Raises:
            ValidationError: If required fields are missing or not strings
            TrackerLimitError: If the concurrent tracker cap is reached
            InsufficientCreditsError: If the reservation is denied
        """
        if not isinstance(config, TrackingConfig):
            config = TrackingConfig.from_mapping(config)

        if len(self.registry) >= self.config.max_active_trackers:
            raise TrackerLimitError("Maximum active trackers exceeded")

        estimate = self.ledger.estimate_message_credits(
            config.content,
            config.model,
            config.provider,
            config.estimation_options(),
            buffer_multiplier=config.buffer_multiplier,
        )
        pricing = self.ledger.get_model_pricing(config.model, config.provider)
        amount = estimate.reservation_credits

        reservation = self.ledger.reserve_credits(
            config.user_id,
            amount,
            ReservationContext(
                model=config.model,
                provider=config.provider,
                conversation_id=config.conversation_id,
                message_id=config.message_id,
                operation_type=config.operation_type,
                estimated_tokens=estimate.estimated_tokens,
                token_count_method=estimate.token_count_method,
                buffer_multiplier=estimate.buffer_multiplier,
            ),
            expiry_minutes=config.expiration_minutes,
        )

        now = self._clock()
        tracker = Tracker(
            tracker_id=reservation.id,
            user_id=config.user_id,
            model=config.model,
            provider=config.provider,
            conversation_id=config.conversation_id,
            message_id=config.message_id,
            estimate=estimate,
            pricing=pricing,
            credits_reserved=amount,
            start_time=now,
            last_update_time=now,
        )
        try:
            self.registry.add(tracker, self.config.max_active_trackers)
        except TrackerLimitError:
            self.ledger.cancel_reservation(reservation.id, "Tracker limit reached")
            raise

        self.registry.record(config.provider, "started")
        logger.info(
            "Streaming tracker started",
            tracker_id=tracker.tracker_id,
            user_id=config.user_id,
            model=config.model,
            credits_reserved=amount,
            token_count_method=estimate.token_count_method,
        )
        return TrackingStarted(
            tracker_id=tracker.tracker_id,
            reservation_id=reservation.id,
            credits_reserved=amount,
            estimated_tokens=TokenCounts(estimate.input_tokens, estimate.estimated_output_tokens),
            expires_at=reservation.expires_at,
            buffer_multiplier=estimate.buffer_multiplier,
        )

    def _live_credits(self, tracker: Tracker, output_tokens: int) -> Decimal:
        usage = TokenUsage(tracker.input_tokens, output_tokens, is_estimated=True)
        return self.ledger.calculate_credits_from_usage(usage, tracker.pricing).actual_credits

    def update_with_chunk(self, tracker_id: str, chunk_text: str, auto_extend: bool = False) -> ChunkUpdate:
        """Account for one streamed text chunk.

        Raises:
            TrackerNotFoundError: If the tracker is unknown
            InvalidStateError: If the tracker is not active
            ValidationError: If chunk_text is not a string
        """
        tracker = self._require(tracker_id)
        if tracker.status != TrackerState.ACTIVE:
            raise InvalidStateError(tracker_id, tracker.status.value, "update")
        if not isinstance(chunk_text, str):
            raise ValidationError("chunk must be a string")

        now = self._clock()
        tracker.chunks_received += 1
        tracker.total_chars += len(chunk_text)
        tracker.last_update_time = now

        elapsed = (now - tracker.start_time).total_seconds()
        tracker.streaming_rate = tracker.total_chars / elapsed if elapsed > 0 else 0.0
        tracker.average_chunk_size = tracker.total_chars / tracker.chunks_received

        tracker.output_tokens = self.ledger.estimator.estimate_tokens_from_chars(
            tracker.total_chars, tracker.provider, tracker.model
        )
        tracker.credits_used = self._live_credits(tracker, tracker.output_tokens)

        usage_ratio = float(tracker.credits_used / tracker.credits_reserved)
        approaching = usage_ratio > self.config.warning_threshold
        if approaching:
            logger.warning(
                "Streaming approaching credit limit",
                tracker_id=tracker_id,
                usage_ratio=round(usage_ratio * 100, 2),
            )
            if auto_extend and usage_ratio > self.config.extend_threshold:
                self._request_extension(tracker, tracker.credits_used * Decimal("0.5"))

        self.registry.record(tracker.provider, "chunk_received")
        return ChunkUpdate(
            tracker_id=tracker_id,
            chunks_received=tracker.chunks_received,
            output_tokens_estimated=tracker.output_tokens,
            credits_used=tracker.credits_used,
            credits_remaining=tracker.credits_reserved - tracker.credits_used,
            usage_ratio=round(usage_ratio * 100, 2),
            streaming_rate=round(tracker.streaming_rate),
            is_approaching_limit=approaching,
        )

    def _request_extension(self, tracker: Tracker, additional_credits: Decimal) -> None:
        # Reservations cannot grow yet; the stream keeps running on its hold
        logger.warning(
            "Reservation extension needed",
            tracker_id=tracker.tracker_id,
            additional_credits=str(additional_credits),
        )

    def _final_usage(self, tracker: Tracker, final_data: Mapping[str, Any]) -> TokenUsage:
        output_tokens = final_data.get("output_tokens")
        input_tokens = final_data.get("input_tokens")
        total_text = final_data.get("total_text")

        for name, value in (("output_tokens", output_tokens), ("input_tokens", input_tokens)):
            if value is not None and not is_token_count(value):
                raise ValidationError(f"{name} must be a non-negative number")

        if output_tokens is not None:
            output = int(output_tokens)
        elif total_text is not None:
            output = self.ledger.estimator.estimate_tokens_from_chars(
                len(total_text), tracker.provider, tracker.model
            )
        else:
            output = tracker.output_tokens

        exact = output_tokens is not None and input_tokens is not None
        return TokenUsage(
            input_tokens=int(input_tokens) if input_tokens is not None else tracker.input_tokens,
            output_tokens=output,
            is_estimated=bool(final_data.get("is_estimated", not exact)),
            estimation_method=None if exact else "streaming-chars",
        )

    def complete_streaming(self, tracker_id: str, final_data: Optional[Mapping[str, Any]] = None) -> StreamingCompletion:
        """Settle the tracker's reservation against the final token count.

        final_data may carry output_tokens and input_tokens (as reported by
        the provider) or total_text to re-estimate output from. On any
        failure the tracker goes to failed, its reservation is cancelled
        as compensation, and the error is re-raised.
        """
        tracker = self._require(tracker_id)
        if not self.registry.transition(tracker, TrackerState.ACTIVE, TrackerState.COMPLETING):
            raise InvalidStateError(tracker_id, tracker.status.value, "complete")
        final_data = final_data or {}

        try:
            usage = self._final_usage(tracker, final_data)
            pricing = self.ledger.get_model_pricing(tracker.model, tracker.provider)
            calculation = self.ledger.calculate_credits_from_usage(usage, pricing)
            settlement = self.ledger.settle_reservation(
                tracker.reservation_id, calculation.chargeable_credits, usage, calculation
            )
        except Exception as e:
            self._fail(tracker, e)
            raise

        now = self._clock()
        tracker.status = TrackerState.COMPLETED
        tracker.output_tokens = usage.output_tokens
        tracker.credits_used = calculation.actual_credits
        tracker.credits_charged = calculation.chargeable_credits
        tracker.completed_at = now
        self.registry.record(tracker.provider, "completed")
        self.registry.schedule_eviction(tracker_id, self.config.completed_grace_seconds)

        duration_ms = int((now - tracker.start_time).total_seconds() * 1000)
        logger.info(
            "Streaming completed",
            tracker_id=tracker_id,
            credits_reserved=tracker.credits_reserved,
            credits_charged=calculation.chargeable_credits,
            duration_ms=duration_ms,
        )
        estimate = tracker.estimate
        return StreamingCompletion(
            tracker_id=tracker_id,
            reservation_id=tracker.reservation_id,
            actual_tokens=TokenCounts(usage.input_tokens, usage.output_tokens),
            estimated_tokens=TokenCounts(estimate.input_tokens, estimate.estimated_output_tokens),
            credits=CreditSummary(
                reserved=tracker.credits_reserved,
                used=calculation.actual_credits,
                charged=calculation.chargeable_credits,
                refunded=settlement.credits_refunded,
            ),
            accuracy_metrics=settlement.accuracy_metrics,
            performance={
                "duration_ms": duration_ms,
                "chunks_received": tracker.chunks_received,
                "streaming_rate": tracker.streaming_rate,
                "average_chunk_size": tracker.average_chunk_size,
            },
            settlement=settlement,
        )

    def _fail(self, tracker: Tracker, error: BaseException) -> None:
        tracker.status = TrackerState.FAILED
        tracker.record_error(self._clock(), error, "completion_error")
        try:
            self.ledger.cancel_reservation(
                tracker.reservation_id, f"Streaming completion failed: {error}"
            )
        except Exception as cancel_error:
            logger.error(
                "Failed to cancel reservation after completion failure",
                tracker_id=tracker.tracker_id,
                error=str(cancel_error),
            )
        self.registry.record(tracker.provider, "failed")
        self.registry.schedule_eviction(tracker.tracker_id, self.config.completed_grace_seconds)
        logger.error("Streaming completion failed", tracker_id=tracker.tracker_id, error=str(error))

    def cancel_streaming(self, tracker_id: str, reason: str = "User cancelled") -> StreamingCancellation:
        """Release the tracker's reservation without charging.

        Raises:
            TrackerNotFoundError: If the tracker is unknown
            InvalidStateError: If the tracker is not active
        """
        tracker = self._require(tracker_id)
        if not self.registry.transition(tracker, TrackerState.ACTIVE, TrackerState.CANCELLING):
            raise InvalidStateError(tracker_id, tracker.status.value, "cancel")

        try:
            cancellation = self.ledger.cancel_reservation(tracker.reservation_id, reason)
        except Exception as e:
            tracker.status = TrackerState.FAILED
            tracker.record_error(self._clock(), e, "cancellation_error")
            raise

        tracker.status = TrackerState.CANCELLED
        tracker.cancelled_at = self._clock()
        tracker.cancellation_reason = reason
        self.registry.record(tracker.provider, "cancelled")
        self.registry.schedule_eviction(tracker_id, self.config.cancelled_grace_seconds)

        logger.info("Streaming cancelled", tracker_id=tracker_id, reason=reason,
                    credits_refunded=cancellation.credits_refunded)
        return StreamingCancellation(
            tracker_id=tracker_id,
            reservation_id=tracker.reservation_id,
            credits_refunded=cancellation.credits_refunded,
            reason=reason,
        )

    def get_tracker_status(self, tracker_id: str) -> Dict[str, Any]:
        tracker = self.registry.get(tracker_id)
        if tracker is None:
            return {"found": False}

        elapsed_ms = int((self._clock() - tracker.start_time).total_seconds() * 1000)
        return {
            "found": True,
            "tracker_id": tracker_id,
            "reservation_id": tracker.reservation_id,
            "status": tracker.status.value,
            "elapsed_time": {
                "milliseconds": elapsed_ms,
                "minutes": round(elapsed_ms / 60000, 2),
            },
            "tokens": {
                "input": tracker.input_tokens,
                "output": tracker.output_tokens,
                "estimated": tracker.estimate.estimated_output_tokens,
            },
            "credits": {
                "reserved": tracker.credits_reserved,
                "used": tracker.credits_used,
                "remaining": tracker.credits_reserved - tracker.credits_used,
            },
            "streaming": {
                "chunks_received": tracker.chunks_received,
                "total_chars": tracker.total_chars,
                "average_chunk_size": tracker.average_chunk_size,
                "streaming_rate": tracker.streaming_rate,
            },
            "errors": len(tracker.errors),
            "last_update": tracker.last_update_time,
        }

    def get_streaming_stats(self) -> Dict[str, Any]:
        trackers = self.registry.values()
        stats: Dict[str, Any] = {
            "active_trackers": len(trackers),
            "total_started": 0,
            "total_completed": 0,
            "total_failed": 0,
            "total_cancelled": 0,
            "by_provider": {},
            "performance": {
                "average_streaming_rate": 0,
                "average_chunk_size": 0,
            },
        }

        for (provider, metric), count in self.registry.counters().items():
            stats["by_provider"].setdefault(provider, {})[metric] = count
            total_key = f"total_{metric}"
            if total_key in stats:
                stats[total_key] += count

        streaming = [t for t in trackers if t.streaming_rate > 0]
        if streaming:
            stats["performance"]["average_streaming_rate"] = round(
                sum(t.streaming_rate for t in streaming) / len(streaming)
            )
            stats["performance"]["average_chunk_size"] = round(
                sum(t.average_chunk_size for t in streaming) / len(streaming)
            )
        return stats

    def cleanup_stale_trackers(self, max_age_minutes: Optional[float] = None) -> SweepResult:
        """Cancel stale active trackers and evict stale finished ones.

        A tracker is stale when it started or was last updated before the
        cutoff. Trackers mid-completion or mid-cancellation are left alone,
        and one that finished concurrently is not an error.
        """
        minutes = self.config.stale_max_age_minutes if max_age_minutes is None else max_age_minutes
        cutoff = self._clock() - timedelta(minutes=minutes)
        stale = [
            t for t in self.registry.values()
            if t.start_time < cutoff or t.last_update_time < cutoff
        ]

        cleaned = 0
        errors: List[Dict[str, str]] = []
        for tracker in stale:
            if tracker.status == TrackerState.ACTIVE:
                try:
                    self.cancel_streaming(tracker.tracker_id, STALE_CLEANUP_REASON)
                    cleaned += 1
                except InvalidStateError:
                    continue
                except InvalidReservationStateError:
                    # The hold already ended (e.g. expired); nothing left to release
                    self.registry.remove(tracker.tracker_id)
                    cleaned += 1
                except Exception as e:
                    logger.error("Stale tracker cleanup failed", tracker_id=tracker.tracker_id, error=str(e))
                    errors.append({"tracker_id": tracker.tracker_id, "error": str(e)})
            elif tracker.status.is_terminal:
                if self.registry.remove(tracker.tracker_id):
                    cleaned += 1

        if stale:
            logger.info("Stale trackers swept", found=len(stale), cleaned=cleaned, errors=len(errors))
        return SweepResult(found=len(stale), cleaned=cleaned, errors=errors)
