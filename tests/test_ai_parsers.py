"""
Unit tests for the AI parsing tiers and the shared response decoder.
"""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from momo_relay.ai.sms_parser import (
    PRIMARY_AI_CONFIDENCE,
    SECONDARY_AI_CONFIDENCE,
    TRANSACTION_EXTRACTION_PROMPT,
    AnthropicTier,
    OpenAiTier,
    build_user_message,
    decode_ai_response,
    strip_code_fences,
)
from momo_relay.config.settings import Settings
from momo_relay.domain.transaction import Direction, ParsedBy, ProviderId

SENDER = "MTN MoMo"
BODY = "You have received GHS 50.00 from 0244123456. Transaction ID: MP123456789"


@pytest.fixture
def ai_response() -> dict:
    """A well-formed AI tier response."""
    return {
        "amount_in_minor_units": 5000,
        "currency": "ghs",
        "sender_phone": "0244123456",
        "recipient_phone": None,
        "transaction_id": "MP123456789",
        "transaction_type": "RECEIVED",
        "provider": "MTN",
        "balance_in_minor_units": 25000,
        "timestamp": "2024-01-15T10:30:00Z",
    }


def _decode(text):
    return decode_ai_response(text, SENDER, BODY, ParsedBy.TIER_PRIMARY_AI, PRIMARY_AI_CONFIDENCE)


class TestDecodeAiResponse:
    """Tests for decode_ai_response."""

    def test_decodes_full_response(self, ai_response):
        result = _decode(json.dumps(ai_response))

        assert result.amount_minor_units == 5000
        assert result.currency_code == "GHS"
        assert result.direction == Direction.RECEIVED
        assert result.counterparty_phone == "0244123456"
        assert result.transaction_reference == "MP123456789"
        assert result.provider_id == ProviderId.MTN
        assert result.balance_minor_units == 25000
        assert result.occurred_at_ms == 1705314600000
        assert result.raw_message == BODY
        assert result.sender == SENDER

    def test_strips_markdown_fences(self, ai_response):
        text = "```json\n" + json.dumps(ai_response) + "\n```"

        assert _decode(text).amount_minor_units == 5000

    def test_sent_uses_recipient_phone(self, ai_response):
        ai_response.update(transaction_type="SENT", sender_phone=None, recipient_phone="0201234567")

        result = _decode(json.dumps(ai_response))

        assert result.direction == Direction.SENT
        assert result.counterparty_phone == "0201234567"

    def test_deposit_uses_sender_phone(self, ai_response):
        ai_response.update(transaction_type="deposit", recipient_phone="0200000000")

        result = _decode(json.dumps(ai_response))

        assert result.direction == Direction.DEPOSIT
        assert result.counterparty_phone == "0244123456"

    def test_full_direction_set_is_kept(self, ai_response):
        ai_response["transaction_type"] = "AIRTIME"

        assert _decode(json.dumps(ai_response)).direction == Direction.AIRTIME

    def test_unknown_type_and_provider(self, ai_response):
        ai_response.update(transaction_type="REFUND", provider="SomeBank")

        result = _decode(json.dumps(ai_response))

        assert result.direction == Direction.UNKNOWN
        assert result.provider_id == ProviderId.UNKNOWN

    def test_missing_currency_uses_default(self, ai_response):
        ai_response["currency"] = None

        result = decode_ai_response(
            json.dumps(ai_response), SENDER, BODY, ParsedBy.TIER_PRIMARY_AI, 0.96, default_currency="RWF"
        )

        assert result.currency_code == "RWF"

    def test_bad_timestamp_is_ignored(self, ai_response):
        ai_response["timestamp"] = "yesterday afternoon"

        assert _decode(json.dumps(ai_response)).occurred_at_ms is None

    @pytest.mark.parametrize("text", [None, "", "   ", "not json", "[1, 2]", '"just a string"'])
    def test_malformed_returns_none(self, text):
        assert _decode(text) is None

    @pytest.mark.parametrize("amount", [None, -100, "5000", 50.5, True])
    def test_invalid_amount_returns_none(self, ai_response, amount):
        ai_response["amount_in_minor_units"] = amount

        assert _decode(json.dumps(ai_response)) is None

    def test_strip_code_fences_leaves_plain_text(self):
        assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'


class TestOpenAiTier:
    """Tests for the primary OpenAI tier."""

    @pytest.fixture
    def settings(self):
        return Settings(_env_file=None, openai_api_key="sk-test", openai_model="gpt-4o-mini")

    def test_disabled_without_key(self):
        tier = OpenAiTier(Settings(_env_file=None, openai_api_key=""))

        assert tier.enabled is False
        assert tier.client is None

    def test_disabled_by_master_switch(self):
        tier = OpenAiTier(Settings(_env_file=None, openai_api_key="sk-test", ai_parsing_enabled=False), MagicMock())

        assert tier.enabled is False

    @pytest.mark.asyncio
    async def test_parse_success(self, settings, ai_response):
        tier = OpenAiTier(settings, client=MagicMock())

        with patch.object(tier, "_complete", new=AsyncMock(return_value=json.dumps(ai_response))):
            result = await tier.parse(SENDER, BODY)

        assert result.parsed_by == ParsedBy.TIER_PRIMARY_AI
        assert result.confidence == PRIMARY_AI_CONFIDENCE
        assert result.amount_minor_units == 5000

    @pytest.mark.asyncio
    async def test_chat_completion_request(self, settings, ai_response):
        client = MagicMock()
        completion = MagicMock()
        completion.choices = [MagicMock(message=MagicMock(content=json.dumps(ai_response)))]
        client.chat.completions.create = AsyncMock(return_value=completion)
        tier = OpenAiTier(settings, client=client)

        result = await tier.parse(SENDER, BODY)

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][0] == {"role": "system", "content": TRANSACTION_EXTRACTION_PROMPT}
        assert kwargs["messages"][1]["content"] == build_user_message(SENDER, BODY)
        assert result.transaction_reference == "MP123456789"

    @pytest.mark.asyncio
    async def test_malformed_output_returns_none(self, settings):
        tier = OpenAiTier(settings, client=MagicMock())

        with patch.object(tier, "_complete", new=AsyncMock(return_value="Sorry, I can't help")):
            assert await tier.parse(SENDER, BODY) is None

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, settings):
        tier = OpenAiTier(settings, client=MagicMock())

        with patch.object(tier, "_complete", new=AsyncMock(side_effect=RuntimeError("connection reset"))):
            with pytest.raises(RuntimeError):
                await tier.parse(SENDER, BODY)


class TestAnthropicTier:
    """Tests for the secondary Anthropic tier."""

    @pytest.fixture
    def settings(self):
        return Settings(_env_file=None, anthropic_api_key="sk-ant-test", ai_parsing_enabled=False)

    def test_enabled_independent_of_master_switch(self, settings):
        assert AnthropicTier(settings, client=MagicMock()).enabled is True

    def test_disabled_without_key(self):
        assert AnthropicTier(Settings(_env_file=None, anthropic_api_key="  ")).enabled is False

    @pytest.mark.asyncio
    async def test_messages_request(self, settings, ai_response):
        client = MagicMock()
        message = MagicMock()
        message.content = [MagicMock(type="text", text="```json\n" + json.dumps(ai_response) + "\n```")]
        client.messages.create = AsyncMock(return_value=message)
        tier = AnthropicTier(settings, client=client)

        result = await tier.parse(SENDER, BODY)

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["system"] == TRANSACTION_EXTRACTION_PROMPT
        assert kwargs["messages"] == [{"role": "user", "content": build_user_message(SENDER, BODY)}]
        assert result.parsed_by == ParsedBy.TIER_SECONDARY_AI
        assert result.confidence == SECONDARY_AI_CONFIDENCE
        assert result.amount_minor_units == 5000

    @pytest.mark.asyncio
    async def test_empty_content_returns_none(self, settings):
        client = MagicMock()
        client.messages.create = AsyncMock(return_value=MagicMock(content=[]))
        tier = AnthropicTier(settings, client=client)

        assert await tier.parse(SENDER, BODY) is None
