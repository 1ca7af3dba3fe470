"""
Pricing calculations and credit rounding.

Converts token usage into USD cost and credits. All arithmetic is done in
Decimal so that chargeable credits are deterministic and auditable.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import Dict, Iterable, List, Tuple, Union

from .token_counter import TokenUsage

Number = Union[int, float, Decimal]

# One credit is worth $0.001
CREDIT_UNIT_USD = Decimal("0.001")


def to_decimal(value: Number) -> Decimal:
    """Convert a number to Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


@dataclass(frozen=True)
class ModelPricing:
    """Per-1K-token pricing for one provider model."""
    provider: str
    model: str
    input_price_per_1k: Decimal  # USD per 1K input tokens
    output_price_per_1k: Decimal  # USD per 1K output tokens

    def __post_init__(self):
        if self.input_price_per_1k < 0:
            raise ValueError("input_price_per_1k cannot be negative")
        if self.output_price_per_1k < 0:
            raise ValueError("output_price_per_1k cannot be negative")


@dataclass(frozen=True)
class CreditCalculation:
    """Cost of a call in USD and credits."""
    input_cost_usd: Decimal
    output_cost_usd: Decimal
    total_cost_usd: Decimal
    actual_credits: Decimal  # fractional
    chargeable_credits: int  # what the user is billed


def _pricing(provider: str, rows: Iterable[Tuple[str, str, str]]) -> List[ModelPricing]:
    return [
        ModelPricing(provider, model, Decimal(input_price), Decimal(output_price))
        for model, input_price, output_price in rows
    ]


# Seed pricing written to the store by `ai-credit-guard init`
DEFAULT_PRICING: List[ModelPricing] = (
    _pricing("openai", [
        ("gpt-4o", "0.0025", "0.01"),
        ("gpt-4o-2024-08-06", "0.0025", "0.01"),
        ("chatgpt-4o-latest", "0.0025", "0.01"),
        ("gpt-4o-mini", "0.00015", "0.0006"),
        ("gpt-4o-mini-2024-07-18", "0.00015", "0.0006"),
        ("gpt-4.1-2025-04-14", "0.01", "0.03"),
        ("o4-mini-2025-04-16", "0.003", "0.012"),
        ("gpt-4-turbo", "0.01", "0.03"),
        ("gpt-3.5-turbo", "0.0005", "0.0015"),
    ])
    + _pricing("anthropic", [
        ("claude-opus-4-20250514", "0.015", "0.075"),
        ("claude-sonnet-4-20250514", "0.003", "0.015"),
        ("claude-3-7-sonnet-latest", "0.003", "0.015"),
        ("claude-3-5-sonnet-20241022", "0.003", "0.015"),
        ("claude-3-5-haiku-latest", "0.0008", "0.004"),
        ("claude-3-5-haiku-20241022", "0.0008", "0.004"),
        ("claude-3-haiku-20240307", "0.00025", "0.00125"),
        ("claude-3-opus-20240229", "0.015", "0.075"),
    ])
    + _pricing("google", [
        ("gemini-2.5-pro-preview-05-06", "0.00125", "0.005"),
        ("gemini-2.5-flash-preview-05-20", "0.000075", "0.0003"),
        ("gemini-2.0-flash", "0.000075", "0.0003"),
        ("gemini-2.0-flash-lite", "0.000075", "0.0003"),
        ("gemini-1.5-pro", "0.00125", "0.005"),
        ("gemini-1.5-flash", "0.000075", "0.0003"),
        ("gemini-1.0-pro", "0.0005", "0.0015"),
    ])
)


def default_pricing_index() -> Dict[Tuple[str, str], ModelPricing]:
    return {(p.provider, p.model): p for p in DEFAULT_PRICING}


def calculate_user_chargeable_credits(actual_credits: Number) -> int:
    """Whole credits to bill for fractional usage.

    Ceiling with a floor of 1 for any positive usage; exactly zero usage
    charges zero.

    Examples:
        0.0001 -> 1, 1.0001 -> 2, 3.0 -> 3, 45.789 -> 46

    Raises:
        ValueError: If actual_credits is negative
    """
    actual = to_decimal(actual_credits)
    if actual < 0:
        raise ValueError("actual_credits cannot be negative")
    if actual == 0:
        return 0
    return max(1, int(actual.to_integral_value(rounding=ROUND_CEILING)))


def calculate_credits_from_usage(
    usage: TokenUsage,
    pricing: ModelPricing,
    credit_unit_usd: Decimal = CREDIT_UNIT_USD,
) -> CreditCalculation:
    """Cost and credits for actual token usage.

    cost = input/1000 * input_price + output/1000 * output_price
    credits = cost / credit_unit_usd
    """
    input_cost = (Decimal(usage.input_tokens) / Decimal("1000")) * pricing.input_price_per_1k
    output_cost = (Decimal(usage.output_tokens) / Decimal("1000")) * pricing.output_price_per_1k
    total_cost = input_cost + output_cost
    actual_credits = total_cost / credit_unit_usd

    return CreditCalculation(
        input_cost_usd=input_cost,
        output_cost_usd=output_cost,
        total_cost_usd=total_cost,
        actual_credits=actual_credits,
        chargeable_credits=calculate_user_chargeable_credits(actual_credits),
    )
