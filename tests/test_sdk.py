"""
Unit tests for SDK layer.

Tests the metered OpenAI wrapper: reservation before the call,
settlement from reported usage and release on failure.
"""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest

from ai_credit_guard.core.errors import InsufficientCreditsError
from ai_credit_guard.core.tracker import StreamingTracker, TokenCounts
from ai_credit_guard.sdk.openai_client import MeteredOpenAI

MESSAGES = [
    {"role": "system", "content": "Be brief."},
    {"role": "user", "content": "Hello"},
]

RESPONSE = {
    "id": "chatcmpl-1",
    "choices": [{"message": {"role": "assistant", "content": "Hi there"}}],
    "usage": {"prompt_tokens": 100, "completion_tokens": 50, "total_tokens": 150},
}


@pytest.fixture
def tracker(ledger, clock):
    return StreamingTracker(ledger, clock=clock)


@pytest.fixture
def client():
    return Mock()


@pytest.fixture
def metered(tracker, client):
    return MeteredOpenAI("alice", "gpt-4o", tracker, client=client)


def text_chunk(text):
    return {"choices": [{"delta": {"content": text}}]}


class TestMeteredOpenAIInit:

    @patch('ai_credit_guard.sdk.openai_client.OpenAI')
    def test_default_client(self, mock_openai_class, tracker):
        mock_openai_class.return_value = Mock()

        metered = MeteredOpenAI("alice", "gpt-4o", tracker)

        mock_openai_class.assert_called_once_with()
        assert metered.client is mock_openai_class.return_value

    def test_empty_user_id(self, tracker, client):
        with pytest.raises(ValueError, match="user_id is required"):
            MeteredOpenAI("", "gpt-4o", tracker, client=client)

    def test_blank_model(self, tracker, client):
        with pytest.raises(ValueError, match="model is required"):
            MeteredOpenAI("alice", "   ", tracker, client=client)


class TestChat:

    def test_chat_settles_reported_usage(self, metered, client, ledger):
        client.chat.completions.create.return_value = RESPONSE

        response = metered.chat(MESSAGES, conversation_id="conv-1", temperature=0.2)

        assert response is RESPONSE
        client.chat.completions.create.assert_called_once_with(
            model="gpt-4o", messages=MESSAGES, temperature=0.2
        )
        completion = metered.last_completion
        assert completion.actual_tokens == TokenCounts(100, 50)
        assert completion.credits.used == Decimal("0.75")
        assert completion.credits.charged == 1
        assert ledger.store.get_balance("alice") == Decimal("99")

        row = ledger.store.fetch_token_usage("alice")[0]
        assert row.conversation_id == "conv-1"
        assert row.is_estimated is False

    def test_chat_with_sdk_objects(self, metered, client, ledger):
        client.chat.completions.create.return_value = SimpleNamespace(
            choices=[],
            usage=SimpleNamespace(prompt_tokens=1000, completion_tokens=500, total_tokens=1500),
        )

        metered.chat(MESSAGES)

        assert metered.last_completion.credits.charged == 8
        assert ledger.store.get_balance("alice") == Decimal("92")

    def test_missing_usage_is_estimated(self, metered, client, ledger):
        client.chat.completions.create.return_value = {
            "choices": [{"message": {"content": "x" * 40}}],
        }

        metered.chat(MESSAGES)

        assert metered.last_completion.actual_tokens == TokenCounts(5, 10)
        assert ledger.store.fetch_token_usage("alice")[0].is_estimated is True

    def test_provider_error_releases_reservation(self, metered, client, ledger):
        client.chat.completions.create.side_effect = RuntimeError("Service unavailable")

        with pytest.raises(RuntimeError, match="Service unavailable"):
            metered.chat(MESSAGES)

        assert ledger.get_active_reservations("alice") == []
        assert ledger.store.get_balance("alice") == Decimal("100")
        assert ledger.store.fetch_token_usage("alice") == []

    def test_insufficient_credits_blocks_call(self, tracker, client, ledger):
        ledger.store.create_account("broke")
        metered = MeteredOpenAI("broke", "gpt-4o", tracker, client=client)

        with pytest.raises(InsufficientCreditsError):
            metered.chat(MESSAGES)

        client.chat.completions.create.assert_not_called()

    def test_multimodal_message_content(self, metered, client):
        client.chat.completions.create.return_value = RESPONSE
        messages = [{"role": "user", "content": [
            {"type": "text", "text": "Describe this image"},
            {"type": "image_url", "image_url": {"url": "https://example.com/cat.png"}},
        ]}]

        metered.chat(messages)

        assert metered.last_completion is not None

    @pytest.mark.parametrize("messages,match", [
        ([], "cannot be empty"),
        ([{"role": "system", "content": "Be brief."}], "non-system message"),
        ([{"role": "user", "content": None}], "no text content"),
    ])
    def test_invalid_messages(self, metered, client, messages, match):
        with pytest.raises(ValueError, match=match):
            metered.chat(messages)
        client.chat.completions.create.assert_not_called()


class TestChatStream:

    def test_stream_settles_final_usage(self, metered, client, ledger):
        client.chat.completions.create.return_value = iter([
            text_chunk("Hel"),
            text_chunk("lo"),
            {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12}},
        ])

        assert list(metered.chat_stream(MESSAGES)) == ["Hel", "lo"]

        client.chat.completions.create.assert_called_once_with(
            model="gpt-4o", messages=MESSAGES, stream=True, stream_options={"include_usage": True}
        )
        assert metered.last_completion.actual_tokens == TokenCounts(10, 2)
        assert ledger.store.get_balance("alice") == Decimal("99")
        assert ledger.get_active_reservations("alice") == []

    def test_stream_without_usage_estimates_from_text(self, metered, client, ledger):
        client.chat.completions.create.return_value = iter([text_chunk("x" * 40)])

        list(metered.chat_stream(MESSAGES))

        assert metered.last_completion.actual_tokens.output == 11
        assert ledger.store.fetch_token_usage("alice")[0].is_estimated is True

    def test_closing_stream_early_releases_reservation(self, metered, client, ledger):
        client.chat.completions.create.return_value = iter([text_chunk("Hel"), text_chunk("lo")])

        stream = metered.chat_stream(MESSAGES)
        assert next(stream) == "Hel"
        stream.close()

        assert ledger.get_active_reservations("alice") == []
        assert ledger.store.fetch_token_usage("alice") == []

    def test_stream_error_releases_reservation(self, metered, client, ledger):
        def failing_stream():
            yield text_chunk("Hel")
            raise RuntimeError("Connection reset")

        client.chat.completions.create.return_value = failing_stream()

        with pytest.raises(RuntimeError, match="Connection reset"):
            list(metered.chat_stream(MESSAGES))

        assert ledger.get_active_reservations("alice") == []
        assert ledger.store.get_balance("alice") == Decimal("100")
