"""
Token usage extraction from provider responses.

`extract` and `extract_streaming` are strict and raise ExtractionError.
`extract_token_usage` and `extract_streaming_usage` never raise for a
missing or malformed usage report: they return a tagged result so the
caller always knows whether the counts are exact or estimated.
"""

import math
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Union

import structlog

from .errors import ExtractionError
from .providers import ProviderRegistry
from .token_counter import TokenUsage

logger = structlog.get_logger()

FALLBACK_CHARS_PER_TOKEN = 4
# Input is assumed to be a fraction of the observed output
RESPONSE_INPUT_RATIO = 0.5
STREAM_INPUT_RATIO = 0.7


@dataclass(frozen=True)
class ExactUsage:
    """Usage reported by the provider."""
    usage: TokenUsage

    @property
    def is_estimated(self) -> bool:
        return False


@dataclass(frozen=True)
class EstimatedUsage:
    """Usage estimated from response text because extraction failed."""
    usage: TokenUsage
    reason: str

    @property
    def is_estimated(self) -> bool:
        return True


ExtractionResult = Union[ExactUsage, EstimatedUsage]


def _estimate_from_text(text: str, input_ratio: float, method: str) -> TokenUsage:
    output_tokens = math.ceil(len(text) / FALLBACK_CHARS_PER_TOKEN)
    input_tokens = math.ceil(output_tokens * input_ratio)
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        is_estimated=True,
        estimation_method=method,
    )


class UsageExtractor:
    """Pulls normalized token usage out of provider responses."""

    def __init__(self, providers: Optional[ProviderRegistry] = None):
        self.providers = providers or ProviderRegistry()

    def extract(self, response: Any, provider: str, model: str) -> TokenUsage:
        """Extract exact usage from a complete response.

        Raises:
            UnsupportedProviderError: If the provider has no adapter
            ExtractionError: If no valid usage object is present
        """
        return self.providers.get(provider).extract(response)

    def extract_streaming(self, chunks: Sequence[Any], provider: str, model: str) -> TokenUsage:
        """Extract exact usage from the last usage-bearing streaming chunk.

        Raises:
            UnsupportedProviderError: If the provider has no adapter
            ExtractionError: If no chunk carries usage
        """
        if not isinstance(chunks, (list, tuple)):
            raise ExtractionError("Invalid chunks array")
        return self.providers.get(provider).extract_streaming(chunks)

    def extract_token_usage(self, response: Any, provider: str, model: str) -> ExtractionResult:
        """Extract usage, estimating from response text when extraction fails."""
        adapter = self.providers.get(provider)
        try:
            return ExactUsage(adapter.extract(response))
        except ExtractionError as e:
            logger.warning(
                "Estimating token usage after extraction failure",
                provider=provider,
                model=model,
                error=str(e),
            )
            text = adapter.response_text(response) if response is not None else ""
            usage = _estimate_from_text(text, RESPONSE_INPUT_RATIO, "response_length")
            return EstimatedUsage(usage=usage, reason=str(e))

    def extract_streaming_usage(self, chunks: Sequence[Any], provider: str, model: str) -> ExtractionResult:
        """Extract streaming usage, estimating from streamed text when absent."""
        adapter = self.providers.get(provider)
        try:
            return ExactUsage(self.extract_streaming(chunks, provider, model))
        except ExtractionError as e:
            logger.warning(
                "Estimating streaming token usage after extraction failure",
                provider=provider,
                model=model,
                error=str(e),
            )
            text = adapter.reconstruct_text(chunks) if isinstance(chunks, (list, tuple)) else ""
            usage = _estimate_from_text(text, STREAM_INPUT_RATIO, "content_length")
            return EstimatedUsage(usage=usage, reason=str(e))
