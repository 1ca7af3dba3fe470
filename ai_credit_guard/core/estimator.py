"""
Character-based token estimation.

Used whenever a provider does not report usage, and before a call starts
when credits must be reserved up front and no exact count is available.
"""

import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, List, Mapping, Optional

from .images import ImageTokenCalculator, is_image_attachment
from .providers import DEFAULT_MAX_OUTPUT_TOKENS, ProviderRegistry
from .token_counter import round_half_up

# Flat proxy for attachment alt text
ATTACHMENT_CHARS = 100

GENERIC_CHARS_PER_TOKEN = 4.0
GENERIC_OVERHEAD_TOKENS = 15
GENERIC_OUTPUT_RATIO = 0.6

PROVIDER_DEFAULT_OVERHEAD_TOKENS = 10

SIMPLE_CHARS_PER_TOKEN = 4.0
SIMPLE_OVERHEAD_TOKENS = 20
SIMPLE_OUTPUT_RATIO = 0.5
SIMPLE_MAX_OUTPUT_TOKENS = 1000

CODE_BLOCK = re.compile(r"```[\s\S]*?```")
INLINE_CODE = re.compile(r"`[^`]+`")
MARKDOWN = re.compile(r"[*_`#\[\]()]")
URL = re.compile(r"https?://\S+")
NON_ASCII = re.compile(r"[^\x00-\x7F]")
JSON_BLOCK = re.compile(r"\{[\s\S]*?\}")


@dataclass(frozen=True)
class EstimationOptions:
    """Prompt context that contributes to input token count."""
    system_prompt: Optional[str] = None
    conversation_history: List[Any] = field(default_factory=list)
    attachments: List[Any] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, options: Optional[Mapping[str, Any]]) -> "EstimationOptions":
        if options is None:
            return cls()
        if isinstance(options, EstimationOptions):
            return options
        return cls(
            system_prompt=options.get("system_prompt"),
            conversation_history=list(options.get("conversation_history") or []),
            attachments=list(options.get("attachments") or []),
        )


@dataclass(frozen=True)
class TokenEstimate:
    """Token counts for a prompt and its likely reply."""
    input_tokens: int
    estimated_output_tokens: int
    method: str
    confidence: str  # "high" for exact counts, else "medium" or "low"
    is_exact: bool = False
    error_recovery: bool = False


def estimate_output_tokens(input_tokens: int, output_ratio: float,
                           max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS) -> int:
    """round(input_tokens * output_ratio), capped at the model's output limit."""
    return min(round_half_up(input_tokens * output_ratio), max_output_tokens)


def message_texts(message: Any) -> Iterator[str]:
    """Text parts of one conversation message."""
    content = message.get("content") if isinstance(message, Mapping) else None
    if isinstance(content, str):
        if content:
            yield content
    elif isinstance(content, list):
        for part in content:
            if isinstance(part, Mapping) and part.get("type") == "text" and part.get("text"):
                yield part["text"]


def prompt_texts(content: Optional[str], options: EstimationOptions) -> Iterator[str]:
    if content:
        yield content
    if options.system_prompt:
        yield options.system_prompt
    for message in options.conversation_history:
        yield from message_texts(message)


def adjust_for_complexity(text: str) -> float:
    """Character length weighted for content that tokenizes densely.

    Code, markup, URLs, non-ASCII text and JSON all cost more tokens per
    character than plain prose.
    """
    adjusted = float(len(text))
    adjusted += sum(len(block) for block in CODE_BLOCK.findall(text)) * 0.15
    adjusted += len(INLINE_CODE.findall(text)) * 2
    adjusted += len(MARKDOWN.findall(text)) * 0.3
    adjusted += sum(len(url) for url in URL.findall(text)) * 0.2
    adjusted += len(NON_ASCII.findall(text)) * 0.3
    if "{" in text and "}" in text:
        adjusted += sum(len(block) for block in JSON_BLOCK.findall(text)) * 0.1
    return adjusted


def calculate_character_count(content: Optional[str], options: Optional[EstimationOptions] = None) -> int:
    """Total characters of content, system prompt, history and attachments."""
    options = options or EstimationOptions()
    total = sum(len(text) for text in prompt_texts(content, options))
    total += len(options.attachments) * ATTACHMENT_CHARS
    return total


def calculate_weighted_character_count(content: Optional[str],
                                       options: Optional[EstimationOptions] = None) -> float:
    """Like calculate_character_count, with each text adjusted for complexity."""
    options = options or EstimationOptions()
    total = sum(adjust_for_complexity(text) for text in prompt_texts(content, options))
    total += len(options.attachments) * ATTACHMENT_CHARS
    return total


class TokenEstimator:
    """Estimates tokens with provider and model-specific heuristics."""

    def __init__(self, providers: Optional[ProviderRegistry] = None,
                 images: Optional[ImageTokenCalculator] = None):
        self.providers = providers or ProviderRegistry()
        self.images = images or ImageTokenCalculator()

    def estimate(
        self,
        content: Optional[str],
        provider: str,
        model: str,
        options: Optional[EstimationOptions] = None,
    ) -> TokenEstimate:
        """Enhanced estimate for a prompt.

        Confidence is "medium" when the model has a calibrated profile or
        belongs to a known family of a known provider, and "low" otherwise.
        Image attachments are costed with the provider's image formula;
        other attachments count a flat ATTACHMENT_CHARS.
        """
        options = EstimationOptions.from_mapping(options)
        adapter = self.providers.find(provider)

        if adapter is None:
            char_count = calculate_character_count(content, options)
            input_tokens = math.ceil(char_count / GENERIC_CHARS_PER_TOKEN) + GENERIC_OVERHEAD_TOKENS
            return TokenEstimate(
                input_tokens=input_tokens,
                estimated_output_tokens=estimate_output_tokens(input_tokens, GENERIC_OUTPUT_RATIO),
                method="enhanced-generic",
                confidence="low",
            )

        images = [a for a in options.attachments if is_image_attachment(a)]
        text_options = replace(
            options, attachments=[a for a in options.attachments if not is_image_attachment(a)]
        )
        if adapter.adjusts_for_complexity:
            char_count = calculate_weighted_character_count(content, text_options)
        else:
            char_count = calculate_character_count(content, text_options)

        heuristics = adapter.heuristics(model)
        input_tokens = (
            math.ceil(char_count / heuristics.chars_per_token)
            + heuristics.overhead_tokens
            + self.images.calculate_multiple(images, provider, model)
        )
        if heuristics.model_aware:
            method = f"enhanced-{provider}"
            confidence = "medium"
        else:
            method = f"provider-default-{provider}"
            confidence = "low"
        return TokenEstimate(
            input_tokens=input_tokens,
            estimated_output_tokens=estimate_output_tokens(
                input_tokens, heuristics.output_ratio, heuristics.max_output_tokens
            ),
            method=method,
            confidence=confidence,
        )

    def provider_default_estimate(
        self,
        content: Optional[str],
        provider: str,
        options: Optional[EstimationOptions] = None,
    ) -> TokenEstimate:
        """Coarse per-provider constants, for unrecognized models."""
        options = EstimationOptions.from_mapping(options)
        char_count = calculate_character_count(content, options)
        adapter = self.providers.find(provider)
        chars_per_token = adapter.default_chars_per_token if adapter else GENERIC_CHARS_PER_TOKEN
        output_ratio = adapter.default_output_ratio if adapter else 0.75

        input_tokens = math.ceil(char_count / chars_per_token) + PROVIDER_DEFAULT_OVERHEAD_TOKENS
        return TokenEstimate(
            input_tokens=input_tokens,
            estimated_output_tokens=estimate_output_tokens(input_tokens, output_ratio),
            method=f"provider-default-{provider}",
            confidence="low",
        )

    def simple_estimate(
        self,
        content: Optional[str],
        options: Optional[EstimationOptions] = None,
    ) -> TokenEstimate:
        """Flat 4 chars/token with a conservative overhead."""
        options = EstimationOptions.from_mapping(options)
        char_count = calculate_character_count(content, options)
        input_tokens = math.ceil(char_count / SIMPLE_CHARS_PER_TOKEN) + SIMPLE_OVERHEAD_TOKENS
        return TokenEstimate(
            input_tokens=input_tokens,
            estimated_output_tokens=estimate_output_tokens(
                input_tokens, SIMPLE_OUTPUT_RATIO, SIMPLE_MAX_OUTPUT_TOKENS
            ),
            method="simple-fallback",
            confidence="low",
        )

    def estimate_tokens_from_chars(self, char_count: int, provider: str, model: str) -> int:
        """Token count for a run of generated text."""
        adapter = self.providers.find(provider)
        chars_per_token = (
            adapter.heuristics(model).chars_per_token if adapter else GENERIC_CHARS_PER_TOKEN
        )
        return math.ceil(char_count / chars_per_token)
