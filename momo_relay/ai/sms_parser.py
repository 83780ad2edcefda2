"""
AI-powered SMS parsers for mobile money transaction extraction.

Two remote tiers share one prompt and one response decoder:
OpenAI chat completions (primary) and Anthropic messages (secondary).
"""

import json
import logging
from typing import Any, Optional

import anthropic
import openai
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from momo_relay.config.settings import Settings
from momo_relay.domain.transaction import Direction, ParsedBy, ParsedTransaction, ProviderId
from momo_relay.utils.time import parse_timestamp_ms

logger = logging.getLogger(__name__)

PRIMARY_AI_CONFIDENCE = 0.96
SECONDARY_AI_CONFIDENCE = 0.94

# System prompt shared by both AI tiers
TRANSACTION_EXTRACTION_PROMPT = """You are a Mobile Money SMS parser for East, Central and West Africa
(Ghana, Rwanda, DR Congo, Tanzania, Burundi, Zambia). Extract transaction information from the SMS message.

Return a JSON object with these fields (use null if not found):
- amount_in_minor_units: integer (amount in the currency's smallest unit; multiply by 100 for GHS, ZMW, KES, USD;
  RWF, CDF, TZS and BIF have no minor unit so use the amount as printed)
- currency: string (ISO 4217 code, e.g. GHS, RWF, CDF, TZS, BIF, ZMW, USD)
- sender_phone: string (phone number of the sender for received transactions)
- recipient_phone: string (phone number of the recipient for sent transactions)
- transaction_id: string (transaction reference/ID)
- transaction_type: string (one of: RECEIVED, SENT, PAYMENT, WITHDRAWAL, DEPOSIT, AIRTIME, CASH_OUT, UNKNOWN)
- provider: string (one of: MTN, VODAFONE, AIRTELTIGO, AIRTEL, TIGO, VODACOM, HALOTEL, LUMICASH, ECOCASH, ORANGE, MPESA, UNKNOWN)
- balance_in_minor_units: integer (account balance in the smallest currency unit if mentioned)
- timestamp: string (ISO 8601 format if date/time mentioned, otherwise null)

Only return the JSON object, no other text or markdown formatting."""

# Directions where the counterparty is the one who paid us
_INBOUND_DIRECTIONS = (Direction.RECEIVED, Direction.DEPOSIT)

_TRANSIENT_OPENAI_ERRORS = (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)
_TRANSIENT_ANTHROPIC_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APITimeoutError,
    anthropic.APIConnectionError,
)


def build_user_message(sender: str, body: str) -> str:
    return f"SMS Sender: {sender}\nSMS Body: {body}"


def strip_code_fences(text: str) -> str:
    """Remove ```json ... ``` markdown fences some models wrap JSON in."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        start = 1 if lines[0].startswith("```") else 0
        end = -1 if lines[-1].strip() == "```" else len(lines)
        text = "\n".join(lines[start:end]).strip()
    return text


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _minor_units(value: Any) -> Optional[int]:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def _direction(value: Any) -> Direction:
    try:
        return Direction(str(value).strip().upper())
    except ValueError:
        return Direction.UNKNOWN


def _provider(value: Any) -> ProviderId:
    try:
        return ProviderId(str(value).strip().upper().replace(" ", ""))
    except ValueError:
        return ProviderId.UNKNOWN


def decode_ai_response(
    text: Optional[str],
    sender: str,
    body: str,
    parsed_by: ParsedBy,
    confidence: float,
    default_currency: str = "GHS",
) -> Optional[ParsedTransaction]:
    """
    Decode an AI tier response into a ParsedTransaction.

    Args:
        text: Raw model output, possibly wrapped in markdown fences
        sender: SMS sender
        body: SMS body, kept verbatim as the raw message
        parsed_by: Tier tag for the result
        confidence: Tier confidence for the result
        default_currency: Currency used when the model omits one

    Returns:
        ParsedTransaction, or None when the output is empty, not JSON, or lacks
        a valid amount_in_minor_units
    """
    if not text or not text.strip():
        logger.debug(f"{parsed_by.value}: empty response")
        return None

    try:
        result = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        logger.debug(f"{parsed_by.value}: response is not JSON: {e}")
        return None

    if not isinstance(result, dict):
        logger.debug(f"{parsed_by.value}: expected JSON object, got {type(result).__name__}")
        return None

    amount = _minor_units(result.get("amount_in_minor_units"))
    if amount is None:
        logger.debug(f"{parsed_by.value}: missing or invalid amount_in_minor_units")
        return None

    currency = _optional_str(result.get("currency")) or default_currency
    if len(currency) != 3 or not currency.isalpha():
        currency = default_currency

    direction = _direction(result.get("transaction_type"))
    if direction in _INBOUND_DIRECTIONS:
        counterparty = _optional_str(result.get("sender_phone"))
    else:
        counterparty = _optional_str(result.get("recipient_phone"))

    return ParsedTransaction(
        amount_minor_units=amount,
        currency_code=currency,
        direction=direction,
        counterparty_phone=counterparty,
        provider_id=_provider(result.get("provider")),
        transaction_reference=_optional_str(result.get("transaction_id")),
        balance_minor_units=_minor_units(result.get("balance_in_minor_units")),
        sender=sender,
        raw_message=body,
        parsed_by=parsed_by,
        confidence=confidence,
        occurred_at_ms=parse_timestamp_ms(result.get("timestamp")),
    )


class OpenAiTier:
    """Primary tier: OpenAI chat completions in JSON mode."""

    name = "openai"
    parsed_by = ParsedBy.TIER_PRIMARY_AI
    confidence = PRIMARY_AI_CONFIDENCE

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self.model = settings.openai_model
        self.client = client
        if self.client is None and self.enabled:
            # Retries are handled by tenacity below
            self.client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                timeout=settings.ai_timeout_seconds,
                max_retries=0,
            )

    @property
    def enabled(self) -> bool:
        return self.settings.openai_enabled

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(_TRANSIENT_OPENAI_ERRORS),
        reraise=True
    )
    async def _complete(self, sender: str, body: str) -> Optional[str]:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": TRANSACTION_EXTRACTION_PROMPT},
                {"role": "user", "content": build_user_message(sender, body)},
            ],
            response_format={"type": "json_object"},
            temperature=0.1,
            max_tokens=500
        )
        return response.choices[0].message.content

    async def parse(self, sender: str, body: str) -> Optional[ParsedTransaction]:
        """
        Parse an SMS with OpenAI.

        Transport and authentication errors propagate to the caller.
        """
        text = await self._complete(sender, body)
        return decode_ai_response(
            text, sender, body, self.parsed_by, self.confidence, self.settings.default_currency
        )


class AnthropicTier:
    """Secondary tier: Anthropic messages API."""

    name = "anthropic"
    parsed_by = ParsedBy.TIER_SECONDARY_AI
    confidence = SECONDARY_AI_CONFIDENCE

    def __init__(self, settings: Settings, client: Optional[AsyncAnthropic] = None):
        self.settings = settings
        self.model = settings.anthropic_model
        self.client = client
        if self.client is None and self.enabled:
            self.client = AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                timeout=settings.ai_timeout_seconds,
                max_retries=0,
            )

    @property
    def enabled(self) -> bool:
        return self.settings.anthropic_enabled

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(_TRANSIENT_ANTHROPIC_ERRORS),
        reraise=True
    )
    async def _complete(self, sender: str, body: str) -> Optional[str]:
        message = await self.client.messages.create(
            model=self.model,
            max_tokens=500,
            temperature=0.1,
            system=TRANSACTION_EXTRACTION_PROMPT,
            messages=[{"role": "user", "content": build_user_message(sender, body)}],
        )
        return "".join(block.text for block in message.content if getattr(block, "type", None) == "text")

    async def parse(self, sender: str, body: str) -> Optional[ParsedTransaction]:
        text = await self._complete(sender, body)
        return decode_ai_response(
            text, sender, body, self.parsed_by, self.confidence, self.settings.default_currency
        )
