"""
Exact token counting ahead of a call.

OpenAI prompts are counted with tiktoken. Anthropic and Google prompts are
counted by the provider's own count-tokens endpoint when a client for it is
configured, and estimated from characters otherwise. Failures propagate so
the caller's error recovery can retry or fall back to an estimate.
"""

import math
import os
from typing import Any, Dict, List, Mapping, Optional, Protocol

import anthropic
import structlog
import tiktoken
from google import genai

from .estimator import (
    ATTACHMENT_CHARS,
    EstimationOptions,
    TokenEstimate,
    TokenEstimator,
    estimate_output_tokens,
    message_texts,
)
from .images import ImageTokenCalculator, is_image_attachment

logger = structlog.get_logger()

DEFAULT_ENCODING = "cl100k_base"
# Chat format overhead, per message and for priming the reply
MESSAGE_OVERHEAD_TOKENS = 4
REPLY_OVERHEAD_TOKENS = 3
IMAGE_PART_TOKENS = 85


def load_encoding(model: str) -> tiktoken.Encoding:
    """tiktoken encoding for an OpenAI model, cl100k_base when unrecognized."""
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(DEFAULT_ENCODING)


class OfficialTokenCounter(Protocol):
    """A provider endpoint that counts prompt tokens exactly."""

    method: str

    def count(self, content: Optional[str], model: str, options: EstimationOptions) -> Optional[int]:
        """Input tokens for the prompt, or None when there is nothing to count."""


def _chat_messages(content: Optional[str], options: EstimationOptions) -> List[Dict[str, str]]:
    messages = []
    for message in options.conversation_history:
        text = "\n".join(message_texts(message))
        if text:
            role = message.get("role") if isinstance(message, Mapping) else None
            messages.append({"role": "assistant" if role == "assistant" else "user", "content": text})
    if content:
        messages.append({"role": "user", "content": content})
    return messages


class AnthropicTokenCounter:
    """Counts prompt tokens with the Anthropic count_tokens endpoint."""

    method = "anthropic-official-api"

    def __init__(self, client: Optional[Any] = None):
        self.client = client or anthropic.Anthropic()

    def count(self, content: Optional[str], model: str, options: EstimationOptions) -> Optional[int]:
        messages = _chat_messages(content, options)
        if not messages:
            return None
        kwargs = {}
        if options.system_prompt:
            kwargs["system"] = options.system_prompt
        result = self.client.messages.count_tokens(model=model, messages=messages, **kwargs)
        return result.input_tokens


class GoogleTokenCounter:
    """Counts prompt tokens with the Gemini countTokens endpoint."""

    method = "google-official-sdk"

    def __init__(self, client: Optional[Any] = None):
        self.client = client or genai.Client()

    def count(self, content: Optional[str], model: str, options: EstimationOptions) -> Optional[int]:
        messages = _chat_messages(content, options)
        if not messages:
            return None
        contents = [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in messages
        ]
        # The Gemini API takes no system instruction when counting
        if options.system_prompt:
            contents.insert(0, {"role": "user", "parts": [{"text": options.system_prompt}]})
        result = self.client.models.count_tokens(model=model, contents=contents)
        return result.total_tokens


def official_counters_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, OfficialTokenCounter]:
    """Official counters for every provider with an API key in the environment."""
    environ = os.environ if environ is None else environ
    counters: Dict[str, OfficialTokenCounter] = {}
    if environ.get("ANTHROPIC_API_KEY"):
        counters["anthropic"] = AnthropicTokenCounter(
            anthropic.Anthropic(api_key=environ["ANTHROPIC_API_KEY"])
        )
    google_key = environ.get("GOOGLE_API_KEY") or environ.get("GEMINI_API_KEY")
    if google_key:
        counters["google"] = GoogleTokenCounter(genai.Client(api_key=google_key))
    return counters


class TokenCounter:
    """Counts prompt tokens as exactly as each provider allows.

    Args:
        estimator: Character-based estimator for providers without an exact count
        encoding_loader: Returns the tiktoken encoding for an OpenAI model
        official_counters: Provider name to official counter
    """

    def __init__(
        self,
        estimator: Optional[TokenEstimator] = None,
        encoding_loader=None,
        official_counters: Optional[Mapping[str, OfficialTokenCounter]] = None,
    ):
        self.estimator = estimator or TokenEstimator()
        self._load_encoding = encoding_loader or load_encoding
        self.official_counters = dict(official_counters or {})

    @property
    def images(self) -> ImageTokenCalculator:
        return self.estimator.images

    def count_tokens(
        self,
        content: Optional[str],
        provider: str,
        model: str,
        options: Optional[EstimationOptions] = None,
    ) -> TokenEstimate:
        """Input tokens and expected output tokens for a prompt.

        Raises whatever the tokenizer or provider endpoint raises.
        """
        options = EstimationOptions.from_mapping(options)
        if provider == "openai":
            return self.count_openai_tokens(content, model, options)

        counter = self.official_counters.get(provider)
        if counter is not None:
            estimate = self._count_official(counter, content, provider, model, options)
            if estimate is not None:
                return estimate
        return self.estimator.estimate(content, provider, model, options)

    def count_openai_tokens(self, content: Optional[str], model: str,
                            options: EstimationOptions) -> TokenEstimate:
        encoding = self._load_encoding(model)

        def encoded_length(text: str) -> int:
            # Special-token markers in user text are counted as plain text
            return len(encoding.encode(text, disallowed_special=()))

        total = 0
        if options.system_prompt:
            total += encoded_length(options.system_prompt) + MESSAGE_OVERHEAD_TOKENS

        for message in options.conversation_history:
            message_content = message.get("content") if isinstance(message, Mapping) else None
            if message_content:
                if isinstance(message_content, str):
                    total += encoded_length(message_content)
                elif isinstance(message_content, list):
                    for part in message_content:
                        if not isinstance(part, Mapping):
                            continue
                        if part.get("type") == "text" and part.get("text"):
                            total += encoded_length(part["text"])
                        elif part.get("type") == "image_url":
                            total += IMAGE_PART_TOKENS
                total += MESSAGE_OVERHEAD_TOKENS
            if isinstance(message, Mapping):
                total += self._attachment_tokens(message.get("attachments") or [], "openai", model)

        if content:
            total += encoded_length(content) + MESSAGE_OVERHEAD_TOKENS
        total += self._attachment_tokens(options.attachments, "openai", model)
        total += REPLY_OVERHEAD_TOKENS

        heuristics = self.estimator.providers.get("openai").heuristics(model)
        return TokenEstimate(
            input_tokens=total,
            estimated_output_tokens=estimate_output_tokens(
                total, heuristics.output_ratio, heuristics.max_output_tokens
            ),
            method="tiktoken",
            confidence="high",
            is_exact=True,
        )

    def _count_official(self, counter: OfficialTokenCounter, content: Optional[str], provider: str,
                        model: str, options: EstimationOptions) -> Optional[TokenEstimate]:
        counted = counter.count(content, model, options)
        if counted is None:
            return None
        input_tokens = counted + self._attachment_tokens(options.attachments, provider, model)
        heuristics = self.estimator.providers.get(provider).heuristics(model)
        logger.debug("Official token count", provider=provider, model=model, input_tokens=input_tokens)
        return TokenEstimate(
            input_tokens=input_tokens,
            estimated_output_tokens=estimate_output_tokens(
                input_tokens, heuristics.output_ratio, heuristics.max_output_tokens
            ),
            method=counter.method,
            confidence="high",
            is_exact=True,
        )

    def _attachment_tokens(self, attachments: List[Any], provider: str, model: str) -> int:
        images = [a for a in attachments if is_image_attachment(a)]
        others = len(attachments) - len(images)
        tokens = self.images.calculate_multiple(images, provider, model)
        if others:
            chars_per_token = self.estimator.providers.get(provider).heuristics(model).chars_per_token
            tokens += math.ceil(others * ATTACHMENT_CHARS / chars_per_token)
        return tokens
