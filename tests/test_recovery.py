"""
Unit tests for tokenization error classification and recovery.
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from ai_credit_guard.core.estimator import TokenEstimate
from ai_credit_guard.core.recovery import (
    ErrorKind,
    ErrorMetrics,
    ErrorRecovery,
    FallbackMethod,
    RecoveryContext,
    classify_error,
)


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class TestClassifyError:

    @pytest.mark.parametrize("message,kind", [
        ("Rate limit exceeded", ErrorKind.RATE_LIMIT),
        ("Too Many Requests", ErrorKind.RATE_LIMIT),
        ("Invalid API key provided", ErrorKind.AUTH_ERROR),
        ("Unauthorized", ErrorKind.AUTH_ERROR),
        ("The model `gpt-5` does not exist", ErrorKind.MODEL_ERROR),
        ("Resource not found", ErrorKind.MODEL_ERROR),
        ("You exceeded your current quota", ErrorKind.QUOTA_ERROR),
        ("Billing hard limit reached", ErrorKind.QUOTA_ERROR),
        ("Connection reset by peer", ErrorKind.NETWORK_ERROR),
        ("Request timed out", ErrorKind.NETWORK_ERROR),
        ("something unexpected", ErrorKind.NETWORK_ERROR),
    ])
    def test_by_message(self, message, kind):
        assert classify_error(RuntimeError(message)) == kind

    @pytest.mark.parametrize("status,kind", [
        (429, ErrorKind.RATE_LIMIT),
        (401, ErrorKind.AUTH_ERROR),
        (403, ErrorKind.AUTH_ERROR),
        (400, ErrorKind.MODEL_ERROR),
        (402, ErrorKind.QUOTA_ERROR),
    ])
    def test_by_status(self, status, kind):
        assert classify_error(StatusError("boom", status)) == kind

    def test_status_on_response(self):
        error = RuntimeError("boom")
        error.response = Mock(status_code=429)
        assert classify_error(error) == ErrorKind.RATE_LIMIT

    def test_rate_limit_takes_precedence(self):
        assert classify_error(RuntimeError("model rate limit exceeded")) == ErrorKind.RATE_LIMIT


class TestErrorRecovery:
    """Test retry and fallback behavior."""

    def setup_method(self):
        self.sleeps = []
        self.recovery = ErrorRecovery(sleep=self.sleeps.append)
        self.context = RecoveryContext("openai", "gpt-4o", "Hello world")

    def test_rate_limit_retry_succeeds(self):
        retry_fn = Mock(side_effect=[RuntimeError("rate limit"), "ok"])

        result = self.recovery.handle_error(RuntimeError("rate limit"), self.context, retry_fn)

        assert result == "ok"
        assert retry_fn.call_count == 2
        assert self.sleeps == [1.0, 2.0]

    def test_rate_limit_retries_exhausted_fall_back(self):
        retry_fn = Mock(side_effect=RuntimeError("rate limit"))

        result = self.recovery.handle_error(RuntimeError("rate limit"), self.context, retry_fn)

        assert retry_fn.call_count == 3
        assert self.sleeps == [1.0, 2.0, 4.0]
        assert isinstance(result, TokenEstimate)
        assert result.error_recovery is True
        assert result.method == "enhanced-openai"
        assert result.input_tokens == 13

    def test_network_error_backoff(self):
        retry_fn = Mock(side_effect=RuntimeError("connection reset"))

        self.recovery.handle_error(RuntimeError("connection reset"), self.context, retry_fn)

        assert retry_fn.call_count == 2
        assert self.sleeps == [0.5, 1.0]

    def test_auth_error_never_retried(self):
        retry_fn = Mock()

        result = self.recovery.handle_error(RuntimeError("invalid api key"), self.context, retry_fn)

        retry_fn.assert_not_called()
        assert self.sleeps == []
        assert result.error_recovery is True
        assert result.method == "enhanced-openai"

    def test_model_error_uses_provider_default(self):
        result = self.recovery.handle_error(RuntimeError("model not found"), self.context)
        assert result.method == "provider-default-openai"
        assert result.confidence == "low"
        assert result.error_recovery is True

    def test_simple_fallback(self):
        result = self.recovery.apply_fallback(FallbackMethod.SIMPLE_ESTIMATION, self.context)
        assert result.method == "simple-fallback"
        assert result.error_recovery is True

    def test_run_with_recovery_passthrough(self):
        assert self.recovery.run_with_recovery(lambda: 42, self.context) == 42
        assert len(self.recovery.metrics) == 0

    def test_run_with_recovery_records_metric(self):
        def failing():
            raise RuntimeError("quota exceeded")

        result = self.recovery.run_with_recovery(failing, self.context)

        assert result.error_recovery is True
        metric = self.recovery.metrics.get("openai", "gpt-4o", ErrorKind.QUOTA_ERROR)
        assert metric.count == 1


class TestErrorMetrics:

    def setup_method(self):
        self.now = datetime(2025, 1, 1, 12, 0, 0)
        self.metrics = ErrorMetrics(clock=lambda: self.now)

    def test_counts_accumulate(self):
        self.metrics.record("openai", "gpt-4o", ErrorKind.RATE_LIMIT)
        metric = self.metrics.record("openai", "gpt-4o", ErrorKind.RATE_LIMIT)
        assert metric.count == 2
        assert len(self.metrics) == 1

    def test_summary(self):
        self.metrics.record("openai", "gpt-4o", ErrorKind.RATE_LIMIT)
        self.metrics.record("anthropic", "claude", ErrorKind.RATE_LIMIT)
        self.metrics.record("anthropic", "claude", ErrorKind.AUTH_ERROR)

        summary = self.metrics.summary()

        assert summary["total_errors"] == 3
        assert summary["errors_by_type"] == {"rate_limit": 2, "auth_error": 1}
        assert summary["errors_by_provider"] == {"openai": 1, "anthropic": 2}
        assert len(summary["recent_errors"]) == 3

    def test_old_entries_leave_recent_window(self):
        self.metrics.record("openai", "gpt-4o", ErrorKind.RATE_LIMIT)
        self.now += timedelta(hours=25)
        summary = self.metrics.summary()
        assert summary["total_errors"] == 1
        assert summary["recent_errors"] == []

    def test_prune(self):
        self.metrics.record("openai", "gpt-4o", ErrorKind.RATE_LIMIT)
        self.now += timedelta(days=3)
        self.metrics.record("openai", "gpt-4o", ErrorKind.AUTH_ERROR)
        self.now += timedelta(days=5)

        assert self.metrics.prune() == 1
        assert self.metrics.get("openai", "gpt-4o", ErrorKind.RATE_LIMIT) is None
        assert self.metrics.get("openai", "gpt-4o", ErrorKind.AUTH_ERROR) is not None
