"""
Token counting and usage validation.

Normalized token counts shared by every provider adapter.
"""

import math
from dataclasses import dataclass
from numbers import Real
from typing import Any, Mapping, Optional

import structlog

from .errors import TokenCountValidationError

logger = structlog.get_logger()

# 1M token safety limit per direction
MAX_TOKENS = 1_000_000


@dataclass(frozen=True)
class TokenUsage:
    """Token usage for one AI call.

    `is_estimated` is True when counts come from a character heuristic
    instead of the provider's own usage report.
    """
    input_tokens: int
    output_tokens: int
    total_tokens: Optional[int] = None
    is_estimated: bool = False
    estimation_method: Optional[str] = None

    def __post_init__(self):
        if self.total_tokens is None:
            object.__setattr__(self, "total_tokens", self.input_tokens + self.output_tokens)


def is_token_count(value: Any) -> bool:
    """True for a finite, non-negative real number that is not a bool."""
    if isinstance(value, bool) or not isinstance(value, Real):
        return False
    return math.isfinite(value) and value >= 0


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    return int(math.floor(value + 0.5))


def validate_usage(usage: Mapping[str, Any]) -> TokenUsage:
    """Validate raw usage counts and return a normalized TokenUsage.

    Args:
        usage: Mapping with input_tokens, output_tokens and optionally
            total_tokens, is_estimated, estimation_method

    Returns:
        TokenUsage with counts rounded to integers

    Raises:
        TokenCountValidationError: If counts are missing, negative,
            non-numeric or above the safety limit
    """
    if not isinstance(usage, Mapping):
        raise TokenCountValidationError("Invalid usage data")

    input_tokens = usage.get("input_tokens")
    output_tokens = usage.get("output_tokens")
    total_tokens = usage.get("total_tokens")

    if not is_token_count(input_tokens) or not is_token_count(output_tokens):
        raise TokenCountValidationError("Invalid token counts")

    if total_tokens is not None:
        if not is_token_count(total_tokens):
            raise TokenCountValidationError("Invalid total token count")
        expected_total = input_tokens + output_tokens
        if abs(total_tokens - expected_total) > 1:
            logger.warning(
                "Token count mismatch",
                total_tokens=total_tokens,
                expected_total=expected_total,
            )

    if input_tokens > MAX_TOKENS or output_tokens > MAX_TOKENS:
        raise TokenCountValidationError("Token count exceeds safety limit")

    return TokenUsage(
        input_tokens=round_half_up(input_tokens),
        output_tokens=round_half_up(output_tokens),
        total_tokens=round_half_up(
            total_tokens if total_tokens else input_tokens + output_tokens
        ),
        is_estimated=bool(usage.get("is_estimated", False)),
        estimation_method=usage.get("estimation_method"),
    )
