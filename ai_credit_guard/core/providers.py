"""
Provider adapters for usage extraction and token heuristics.

Each AI provider reports usage in its own response shape and tokenizes
text at its own rate. A ProviderAdapter bundles both concerns so the
extractor, estimator and tracker can dispatch through one registry lookup.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ExtractionError, UnsupportedProviderError
from .token_counter import TokenUsage, is_token_count


def get_field(obj: Any, key: str) -> Any:
    """Read a key from a dict or an attribute from an SDK object."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def first_item(obj: Any) -> Any:
    """First element of a list-like value, or None."""
    if isinstance(obj, (list, tuple)) and obj:
        return obj[0]
    return None


def get_path(obj: Any, *path: Any) -> Any:
    """Walk a path of keys and list indexes, returning None on any gap."""
    current = obj
    for step in path:
        if current is None:
            return None
        if step == 0:
            current = first_item(current)
        else:
            current = get_field(current, step)
    return current


# Cap on estimated output when a model publishes no limit of its own
DEFAULT_MAX_OUTPUT_TOKENS = 4096


@dataclass(frozen=True)
class TokenHeuristics:
    """Character-per-token constants for one provider model or model family."""
    chars_per_token: float
    overhead_tokens: int
    output_ratio: float
    model_aware: bool
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    name: str = ""


def _profile(name: str, chars_per_token: float, overhead_tokens: int, output_ratio: float,
             max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS) -> TokenHeuristics:
    return TokenHeuristics(chars_per_token, overhead_tokens, output_ratio, True,
                           max_output_tokens, name)


class ProviderAdapter(ABC):
    """Response-shape and tokenization knowledge for one provider."""

    name: str = ""
    # Coarse constants used when a model is unrecognized
    default_chars_per_token: float = 4.0
    default_output_ratio: float = 0.75
    overhead_tokens: int = 10
    output_ratio: float = 0.75
    # Candidate paths to the usage object, searched in order
    usage_paths: Tuple[Tuple[Any, ...], ...] = ()
    # Calibrated constants for specific model names, keyed lowercase
    model_profiles: Dict[str, TokenHeuristics] = {}
    # Whether markup, code and non-ASCII text inflate the character count
    adjusts_for_complexity: bool = False

    def find_usage(self, response: Any) -> Any:
        for path in self.usage_paths:
            usage = get_path(response, *path)
            if usage:
                return usage
        return None

    def extract(self, response: Any) -> TokenUsage:
        """Extract exact usage from a complete response.

        Raises:
            ExtractionError: If no usage object is found or its counts are invalid
        """
        if response is None:
            raise ExtractionError("Response is required")
        usage = self.find_usage(response)
        if not usage:
            raise ExtractionError(f"No usage data found in {self.name} response")
        return self.parse_usage(usage)

    @abstractmethod
    def parse_usage(self, usage: Any) -> TokenUsage:
        """Convert a located usage object into TokenUsage."""

    @abstractmethod
    def is_usage_chunk(self, chunk: Any) -> bool:
        """True when a streaming chunk carries final usage."""

    def extract_streaming(self, chunks: Sequence[Any]) -> TokenUsage:
        """Extract usage from streaming chunks, newest first."""
        if not chunks:
            raise ExtractionError("Invalid chunks array")
        for chunk in reversed(chunks):
            if chunk is not None and self.is_usage_chunk(chunk):
                return self.extract(chunk)
        raise ExtractionError(f"No usage data found in {self.name} streaming chunks")

    @abstractmethod
    def response_text(self, response: Any) -> str:
        """Best-effort generated text of a complete response."""

    @abstractmethod
    def chunk_text(self, chunk: Any) -> str:
        """Text delta carried by one streaming chunk."""

    def reconstruct_text(self, chunks: Iterable[Any]) -> str:
        return "".join(self.chunk_text(chunk) or "" for chunk in chunks if chunk is not None)

    def heuristics(self, model: str) -> TokenHeuristics:
        """Model-aware tokenization constants.

        An exact model profile wins over the family divisor. Falls back to
        the provider default divisor with model_aware=False when the model
        belongs to no known family.
        """
        key = (model or "").lower()
        profile = self.model_profiles.get(key)
        if profile is not None:
            return profile

        divisor = self.model_chars_per_token(key)
        if divisor is None:
            return TokenHeuristics(
                chars_per_token=self.default_chars_per_token,
                overhead_tokens=self.overhead_tokens,
                output_ratio=self.output_ratio,
                model_aware=False,
                name=f"{self.name} (unknown)",
            )
        return TokenHeuristics(
            chars_per_token=divisor,
            overhead_tokens=self.overhead_tokens,
            output_ratio=self.output_ratio,
            model_aware=True,
            name=f"{self.name} family",
        )

    @abstractmethod
    def model_chars_per_token(self, model: str) -> Optional[float]:
        """Chars-per-token for a known model family, else None."""


def _require_counts(provider: str, *values: Any) -> None:
    if not all(is_token_count(v) for v in values):
        raise ExtractionError(f"Invalid usage data structure from {provider}")


class OpenAIAdapter(ProviderAdapter):
    """OpenAI and OpenAI-schema-compatible vendors (Groq)."""

    name = "openai"
    default_chars_per_token = 4.0
    default_output_ratio = 0.75
    overhead_tokens = 10
    output_ratio = 0.75
    usage_paths = (("usage",), ("choices", 0, "usage"), ("x_groq", "usage"))
    model_profiles = {
        "gpt-4o": _profile("GPT-4o", 3.8, 10, 0.75),
        "gpt-4o-2024-08-06": _profile("GPT-4o", 3.8, 10, 0.75),
        "chatgpt-4o-latest": _profile("ChatGPT-4o", 3.8, 10, 0.75),
        "gpt-4o-mini": _profile("GPT-4o mini", 4.0, 10, 0.75, 16384),
        "gpt-4o-mini-2024-07-18": _profile("GPT-4o mini", 4.0, 10, 0.75, 16384),
        "gpt-4.1-2025-04-14": _profile("GPT-4.1", 3.8, 10, 0.75),
        "o4-mini-2025-04-16": _profile("o4-mini", 4.0, 10, 0.75, 65536),
        "gpt-4-turbo": _profile("GPT-4 Turbo", 3.8, 10, 0.75),
        "gpt-3.5-turbo": _profile("GPT-3.5 Turbo", 4.2, 10, 0.75),
    }

    def parse_usage(self, usage: Any) -> TokenUsage:
        prompt = get_field(usage, "prompt_tokens")
        completion = get_field(usage, "completion_tokens")
        _require_counts(self.name, prompt, completion)
        total = get_field(usage, "total_tokens")
        if not is_token_count(total) or not total:
            total = prompt + completion
        return TokenUsage(input_tokens=int(prompt), output_tokens=int(completion),
                          total_tokens=int(total))

    def is_usage_chunk(self, chunk: Any) -> bool:
        return bool(get_field(chunk, "usage"))

    def response_text(self, response: Any) -> str:
        return get_path(response, "choices", 0, "message", "content") or ""

    def chunk_text(self, chunk: Any) -> str:
        return get_path(chunk, "choices", 0, "delta", "content") or ""

    def model_chars_per_token(self, model: str) -> Optional[float]:
        if "gpt-4" in model or "o4" in model:
            return 3.8
        if "gpt-3.5" in model:
            return 4.2
        return None


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API."""

    name = "anthropic"
    default_chars_per_token = 3.5
    default_output_ratio = 0.75
    overhead_tokens = 8
    output_ratio = 0.75
    usage_paths = (("usage",), ("message", "usage"), ("content", 0, "usage"))
    model_profiles = {
        "claude-opus-4-20250514": _profile("Claude 4 Opus", 3.2, 12, 0.75),
        "claude-sonnet-4-20250514": _profile("Claude 4 Sonnet", 3.3, 10, 0.75),
        "claude-3-7-sonnet-latest": _profile("Claude 3.7 Sonnet", 3.4, 8, 0.75),
        "claude-3-5-sonnet-20241022": _profile("Claude 3.5 Sonnet", 3.5, 8, 0.75),
        "claude-3-5-haiku-latest": _profile("Claude 3.5 Haiku", 3.6, 8, 0.7),
        "claude-3-5-haiku-20241022": _profile("Claude 3.5 Haiku", 3.6, 8, 0.7),
    }
    adjusts_for_complexity = True

    def parse_usage(self, usage: Any) -> TokenUsage:
        input_tokens = get_field(usage, "input_tokens")
        output_tokens = get_field(usage, "output_tokens")
        _require_counts(self.name, input_tokens, output_tokens)
        # Anthropic never reports a combined total
        return TokenUsage(input_tokens=int(input_tokens), output_tokens=int(output_tokens))

    def is_usage_chunk(self, chunk: Any) -> bool:
        return get_field(chunk, "type") == "message_stop" and bool(get_field(chunk, "usage"))

    def response_text(self, response: Any) -> str:
        text = get_path(response, "content", 0, "text")
        if text:
            return text
        content = get_path(response, "message", "content")
        return content if isinstance(content, str) else ""

    def chunk_text(self, chunk: Any) -> str:
        if get_field(chunk, "type") != "content_block_delta":
            return ""
        return get_path(chunk, "delta", "text") or ""

    def model_chars_per_token(self, model: str) -> Optional[float]:
        if "opus" in model or "claude-4" in model:
            return 3.2
        if "haiku" in model:
            return 3.6
        if "claude" in model or "sonnet" in model:
            return 3.5
        return None


class GoogleAdapter(ProviderAdapter):
    """Google Gemini generateContent responses."""

    name = "google"
    default_chars_per_token = 4.0
    default_output_ratio = 0.7
    overhead_tokens = 12
    output_ratio = 0.7
    usage_paths = (
        ("usageMetadata",),
        ("response", "usageMetadata"),
        ("candidates", 0, "usageMetadata"),
    )
    model_profiles = {
        "gemini-2.5-pro-preview-05-06": _profile("Gemini 2.5 Pro", 3.8, 15, 0.75, 8192),
        "gemini-2.5-flash-preview-05-20": _profile("Gemini 2.5 Flash", 4.0, 12, 0.75, 8192),
        "gemini-2.0-flash": _profile("Gemini 2.0 Flash", 4.2, 10, 0.7, 8192),
        "gemini-2.0-flash-lite": _profile("Gemini 2.0 Flash Lite", 4.2, 8, 0.65, 8192),
        "gemini-1.5-pro": _profile("Gemini 1.5 Pro", 4.0, 12, 0.75),
        "gemini-1.5-flash": _profile("Gemini 1.5 Flash", 4.2, 10, 0.7),
    }
    adjusts_for_complexity = True

    def parse_usage(self, usage: Any) -> TokenUsage:
        prompt = get_field(usage, "promptTokenCount")
        candidates = get_field(usage, "candidatesTokenCount")
        _require_counts(self.name, prompt, candidates)
        total = get_field(usage, "totalTokenCount")
        if not is_token_count(total) or not total:
            total = prompt + candidates
        return TokenUsage(input_tokens=int(prompt), output_tokens=int(candidates),
                          total_tokens=int(total))

    def is_usage_chunk(self, chunk: Any) -> bool:
        return bool(get_field(chunk, "usageMetadata"))

    def response_text(self, response: Any) -> str:
        text = get_path(response, "candidates", 0, "content", "parts", 0, "text")
        if text:
            return text
        return get_path(response, "response", "candidates", 0, "content", "parts", 0, "text") or ""

    def chunk_text(self, chunk: Any) -> str:
        return get_path(chunk, "candidates", 0, "content", "parts", 0, "text") or ""

    def model_chars_per_token(self, model: str) -> Optional[float]:
        if "pro" in model:
            return 3.8
        if "flash" in model or "lite" in model:
            return 4.2
        if "gemini" in model:
            return 4.0
        return None


class ProviderRegistry:
    """Lookup of provider adapters by provider name."""

    def __init__(self, adapters: Optional[Iterable[ProviderAdapter]] = None):
        self._adapters: Dict[str, ProviderAdapter] = {}
        for adapter in adapters or (OpenAIAdapter(), AnthropicAdapter(), GoogleAdapter()):
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, provider: str) -> ProviderAdapter:
        """Return the adapter for a provider.

        Raises:
            UnsupportedProviderError: If no adapter is registered
        """
        adapter = self._adapters.get(provider)
        if adapter is None:
            raise UnsupportedProviderError(f"Unsupported provider: {provider}")
        return adapter

    def find(self, provider: str) -> Optional[ProviderAdapter]:
        return self._adapters.get(provider)

    @property
    def names(self) -> List[str]:
        return sorted(self._adapters)
