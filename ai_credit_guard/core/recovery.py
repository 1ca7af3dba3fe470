"""
Error classification and recovery for token counting.

Provider and tokenization failures are sorted into a fixed taxonomy. Each
kind maps to a recovery policy: transient kinds are retried with
exponential backoff, everything else (and exhausted retries) falls back to
a best-effort token estimate instead of raising.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

import structlog
from tenacity import Retrying, stop_after_attempt, wait_exponential

from .estimator import EstimationOptions, TokenEstimate, TokenEstimator

logger = structlog.get_logger()

T = TypeVar("T")

METRIC_RETENTION = timedelta(days=7)
RECENT_WINDOW = timedelta(hours=24)


class ErrorKind(Enum):
    """Provider/tokenization error taxonomy."""
    RATE_LIMIT = "rate_limit"
    AUTH_ERROR = "auth_error"
    MODEL_ERROR = "model_error"
    QUOTA_ERROR = "quota_error"
    NETWORK_ERROR = "network_error"


class FallbackMethod(Enum):
    """Estimation strategy used once retries are exhausted or not allowed."""
    ENHANCED_ESTIMATION = "enhanced_estimation"
    PROVIDER_DEFAULT = "provider_default"
    SIMPLE_ESTIMATION = "simple_estimation"


@dataclass(frozen=True)
class RecoveryPolicy:
    should_retry: bool
    max_retries: int
    base_delay_ms: int
    fallback_method: FallbackMethod


RECOVERY_POLICIES: Dict[ErrorKind, RecoveryPolicy] = {
    ErrorKind.RATE_LIMIT: RecoveryPolicy(True, 3, 1000, FallbackMethod.ENHANCED_ESTIMATION),
    ErrorKind.NETWORK_ERROR: RecoveryPolicy(True, 2, 500, FallbackMethod.ENHANCED_ESTIMATION),
    ErrorKind.AUTH_ERROR: RecoveryPolicy(False, 0, 0, FallbackMethod.ENHANCED_ESTIMATION),
    ErrorKind.MODEL_ERROR: RecoveryPolicy(False, 0, 0, FallbackMethod.PROVIDER_DEFAULT),
    ErrorKind.QUOTA_ERROR: RecoveryPolicy(False, 0, 0, FallbackMethod.ENHANCED_ESTIMATION),
}

NETWORK_TOKENS = ("network", "timeout", "timed out", "enotfound", "econnreset",
                  "connection reset", "name resolution", "getaddrinfo")


def _status_code(error: BaseException) -> Optional[int]:
    for attr in ("status", "status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an exception by HTTP status and message, in precedence order."""
    message = str(error).lower()
    status = _status_code(error)

    if status == 429 or "rate limit" in message or "too many requests" in message:
        return ErrorKind.RATE_LIMIT
    if status in (401, 403) or "unauthorized" in message or "api key" in message:
        return ErrorKind.AUTH_ERROR
    if status == 400 or "model" in message or "not found" in message:
        return ErrorKind.MODEL_ERROR
    if status == 402 or any(t in message for t in ("quota", "billing", "insufficient")):
        return ErrorKind.QUOTA_ERROR
    if any(token in message for token in NETWORK_TOKENS):
        return ErrorKind.NETWORK_ERROR
    # Unknown failures are treated as transient
    return ErrorKind.NETWORK_ERROR


@dataclass
class ErrorMetric:
    provider: str
    model: str
    error_type: ErrorKind
    count: int
    last_seen: datetime


class ErrorMetrics:
    """Per (provider, model, error kind) counters with last-seen time."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock
        self._lock = threading.Lock()
        self._metrics: Dict[Tuple[str, str, ErrorKind], ErrorMetric] = {}

    def record(self, provider: str, model: str, kind: ErrorKind) -> ErrorMetric:
        key = (provider, model, kind)
        with self._lock:
            metric = self._metrics.get(key)
            if metric is None:
                metric = ErrorMetric(provider, model, kind, 0, self._clock())
                self._metrics[key] = metric
            metric.count += 1
            metric.last_seen = self._clock()
            return metric

    def get(self, provider: str, model: str, kind: ErrorKind) -> Optional[ErrorMetric]:
        with self._lock:
            return self._metrics.get((provider, model, kind))

    def summary(self) -> Dict[str, Any]:
        """Totals by type and provider plus entries seen in the last 24h."""
        now = self._clock()
        summary: Dict[str, Any] = {
            "total_errors": 0,
            "errors_by_type": {},
            "errors_by_provider": {},
            "recent_errors": [],
        }
        with self._lock:
            metrics = list(self._metrics.values())
        for metric in metrics:
            kind = metric.error_type.value
            summary["total_errors"] += metric.count
            summary["errors_by_type"][kind] = summary["errors_by_type"].get(kind, 0) + metric.count
            summary["errors_by_provider"][metric.provider] = (
                summary["errors_by_provider"].get(metric.provider, 0) + metric.count
            )
            if now - metric.last_seen < RECENT_WINDOW:
                summary["recent_errors"].append({
                    "provider": metric.provider,
                    "model": metric.model,
                    "error_type": kind,
                    "count": metric.count,
                    "last_seen": metric.last_seen,
                })
        return summary

    def prune(self, max_age: timedelta = METRIC_RETENTION) -> int:
        """Drop entries not seen within max_age. Returns the number removed."""
        cutoff = self._clock() - max_age
        with self._lock:
            stale = [key for key, m in self._metrics.items() if m.last_seen < cutoff]
            for key in stale:
                del self._metrics[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)


@dataclass(frozen=True)
class RecoveryContext:
    """What is being counted, for metrics and fallback estimation."""
    provider: str
    model: str
    content: Optional[str] = None
    options: EstimationOptions = field(default_factory=EstimationOptions)


class ErrorRecovery:
    """Retries transient failures and converts the rest into estimates."""

    def __init__(
        self,
        estimator: Optional[TokenEstimator] = None,
        metrics: Optional[ErrorMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.estimator = estimator or TokenEstimator()
        self.metrics = metrics or ErrorMetrics()
        self._sleep = sleep

    def handle_error(
        self,
        error: BaseException,
        context: RecoveryContext,
        retry_fn: Optional[Callable[[], T]] = None,
    ):
        """Recover from a failed token count.

        Returns the result of a successful retry, or a fallback
        TokenEstimate with error_recovery=True. Never raises for the
        classified provider errors.
        """
        kind = classify_error(error)
        policy = RECOVERY_POLICIES[kind]
        self.metrics.record(context.provider, context.model, kind)

        logger.warning(
            "Tokenization error",
            error_type=kind.value,
            provider=context.provider,
            model=context.model,
            error=str(error),
        )

        if policy.should_retry and policy.max_retries > 0 and retry_fn is not None:
            try:
                return self._retry(policy, context, retry_fn)
            except Exception as retry_error:
                logger.warning(
                    "Retry failed, using fallback",
                    error_type=kind.value,
                    provider=context.provider,
                    model=context.model,
                    error=str(retry_error),
                )

        return self.apply_fallback(policy.fallback_method, context)

    def run_with_recovery(self, operation: Callable[[], T], context: RecoveryContext):
        """Run a token-counting operation under the recovery policy."""
        try:
            return operation()
        except Exception as e:
            return self.handle_error(e, context, operation)

    def _retry(self, policy: RecoveryPolicy, context: RecoveryContext, retry_fn: Callable[[], T]) -> T:
        base_delay = policy.base_delay_ms / 1000.0
        # The failed call already happened: wait base * 2^0 before the first
        # retry, then base * 2^n between subsequent ones.
        self._sleep(base_delay)
        retrying = Retrying(
            stop=stop_after_attempt(policy.max_retries),
            wait=wait_exponential(multiplier=base_delay * 2, min=0),
            sleep=self._sleep,
            reraise=True,
            before=lambda state: logger.info(
                "Retrying tokenization",
                attempt=state.attempt_number,
                max_retries=policy.max_retries,
                provider=context.provider,
                model=context.model,
            ),
        )
        return retrying(retry_fn)

    def apply_fallback(self, method: FallbackMethod, context: RecoveryContext) -> TokenEstimate:
        if method == FallbackMethod.ENHANCED_ESTIMATION:
            estimate = self.estimator.estimate(
                context.content, context.provider, context.model, context.options
            )
        elif method == FallbackMethod.PROVIDER_DEFAULT:
            estimate = self.estimator.provider_default_estimate(
                context.content, context.provider, context.options
            )
        else:
            estimate = self.estimator.simple_estimate(context.content, context.options)
        return TokenEstimate(
            input_tokens=estimate.input_tokens,
            estimated_output_tokens=estimate.estimated_output_tokens,
            method=estimate.method,
            confidence=estimate.confidence,
            error_recovery=True,
        )

    def get_error_metrics(self) -> Dict[str, Any]:
        return self.metrics.summary()
