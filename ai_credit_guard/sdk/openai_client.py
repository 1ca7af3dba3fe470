"""
Metered OpenAI client wrapper.

Reserves credits before each chat completion and settles them against the
usage OpenAI reports, so a user can never spend more than they own.
"""

from typing import Any, Dict, Iterator, List, Optional

import structlog
from openai import OpenAI

from ..core.extractor import ExactUsage, UsageExtractor
from ..core.tracker import StreamingCompletion, StreamingTracker, TrackingConfig

logger = structlog.get_logger()

PROVIDER = "openai"


def _message_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


class MeteredOpenAI:
    """OpenAI client wrapper that charges a user's credits per call.

    Each call runs under a streaming tracker: credits are reserved up front
    (raising InsufficientCreditsError before any provider call is made),
    then settled with the real token counts. Any provider failure cancels
    the reservation and propagates unchanged.
    """

    def __init__(
        self,
        user_id: str,
        model: str,
        tracker: StreamingTracker,
        client: Optional[OpenAI] = None,
        extractor: Optional[UsageExtractor] = None,
    ):
        """Initialize metered OpenAI client.

        Args:
            user_id: User whose credits pay for calls (required)
            model: OpenAI model name (required)
            tracker: Streaming tracker bound to a credit ledger
            client: OpenAI client (defaults to OpenAI())
            extractor: Usage extractor (defaults to UsageExtractor())

        Raises:
            ValueError: If user_id or model is missing/empty
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")

        self.user_id = user_id
        self.model = model
        self.tracker = tracker
        self.client = client or OpenAI()
        self.extractor = extractor or UsageExtractor()
        self.last_completion: Optional[StreamingCompletion] = None

    def _tracking_config(self, messages: List[Dict[str, Any]], conversation_id: Optional[str],
                         message_id: Optional[str]) -> TrackingConfig:
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        system = [m for m in messages if m.get("role") == "system"]
        dialog = [m for m in messages if m.get("role") != "system"]
        if not dialog:
            raise ValueError("messages must contain at least one non-system message")

        content = _message_text(dialog[-1])
        if not content:
            raise ValueError("the last message has no text content")

        return TrackingConfig(
            user_id=self.user_id,
            content=content,
            model=self.model,
            provider=PROVIDER,
            conversation_id=conversation_id,
            message_id=message_id,
            system_prompt="\n".join(_message_text(m) for m in system) or None,
            conversation_history=dialog[:-1],
        )

    def _release(self, tracker_id: str, reason: str) -> None:
        if self.tracker.get_tracker_status(tracker_id).get("status") == "active":
            self.tracker.cancel_streaming(tracker_id, reason)

    def chat(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion paid for with the user's credits.

        Args:
            messages: List of message dictionaries (required)
            conversation_id: Optional conversation reference for the audit row
            message_id: Optional message reference for the audit row
            **kwargs: Additional OpenAI parameters

        Returns:
            OpenAI chat completion response, unchanged. The settlement is
            available as `last_completion`.

        Raises:
            ValueError: If messages is empty
            InsufficientCreditsError: If the user cannot cover the estimate
            OpenAI API errors: Propagated after the reservation is cancelled
        """
        started = self.tracker.start_tracking(
            self._tracking_config(messages, conversation_id, message_id)
        )

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                **kwargs
            )
        except Exception as e:
            logger.warning("OpenAI call failed, releasing credits",
                           tracker_id=started.tracker_id, error=str(e))
            self._release(started.tracker_id, f"Provider call failed: {e}")
            raise

        result = self.extractor.extract_token_usage(response, PROVIDER, self.model)
        usage = result.usage
        self.last_completion = self.tracker.complete_streaming(
            started.tracker_id,
            {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "is_estimated": result.is_estimated,
            },
        )
        return response

    def chat_stream(
        self,
        messages: List[Dict[str, Any]],
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
        **kwargs: Any
    ) -> Iterator[str]:
        """Stream a chat completion, yielding text deltas.

        Every delta is fed to the tracker. When the stream ends the
        reservation is settled with the usage from the final chunk, or with
        an estimate from the streamed text if OpenAI sent none. Closing the
        iterator early or a provider failure cancels the reservation.
        """
        started = self.tracker.start_tracking(
            self._tracking_config(messages, conversation_id, message_id)
        )
        tracker_id = started.tracker_id
        adapter = self.extractor.providers.get(PROVIDER)
        chunks: List[Any] = []
        texts: List[str] = []
        settled = False

        try:
            stream = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                stream_options={"include_usage": True},
                **kwargs
            )
            for chunk in stream:
                chunks.append(chunk)
                text = adapter.chunk_text(chunk)
                if text:
                    texts.append(text)
                    self.tracker.update_with_chunk(tracker_id, text)
                    yield text

            result = self.extractor.extract_streaming_usage(chunks, PROVIDER, self.model)
            if isinstance(result, ExactUsage):
                final_data = {
                    "input_tokens": result.usage.input_tokens,
                    "output_tokens": result.usage.output_tokens,
                }
            else:
                final_data = {"total_text": "".join(texts)}
            self.last_completion = self.tracker.complete_streaming(tracker_id, final_data)
            settled = True
        finally:
            if not settled:
                self._release(tracker_id, "Stream interrupted")
