"""
Parser chain: runs the parsing tiers in order and returns the first result.

Tiers are tried most accurate (and most expensive) first. A tier that is
disabled is skipped; a tier that raises is logged and the next one runs. When
every tier misses the chain still returns a record (TIER_NONE) so the raw
message is never lost.
"""

import logging
from typing import List, Optional, Protocol, Sequence

from momo_relay.config.settings import Settings
from momo_relay.domain.transaction import Direction, ParsedBy, ParsedTransaction, ProviderId, SyncState

logger = logging.getLogger(__name__)


class ParserTier(Protocol):
    name: str
    parsed_by: ParsedBy
    confidence: float

    @property
    def enabled(self) -> bool: ...

    async def parse(self, sender: str, body: str) -> Optional[ParsedTransaction]: ...


class ParserChain:
    """Ordered list of parser tiers behind a single parse call."""

    def __init__(self, settings: Settings, tiers: Sequence[ParserTier]):
        self.settings = settings
        self.tiers: List[ParserTier] = list(tiers)

    async def parse(self, sender: str, body: str) -> ParsedTransaction:
        """
        Parse an SMS through the tiers.

        Args:
            sender: SMS sender id
            body: SMS text

        Returns:
            The first tier's result tagged with that tier, or an unparsed
            TIER_NONE record. Never None, never raises.
        """
        for tier in self.tiers:
            if not tier.enabled:
                logger.debug(f"Skipping disabled tier {tier.name}")
                continue

            try:
                result = await tier.parse(sender, body)
            except Exception as e:
                logger.warning(f"Parser tier {tier.name} failed, trying next tier: {e}")
                continue

            if result is not None:
                logger.info(
                    f"Parsed SMS from {sender} with {tier.name}: "
                    f"{result.amount_minor_units} {result.currency_code} {result.direction.value}"
                )
                return result.model_copy(update={"parsed_by": tier.parsed_by, "confidence": tier.confidence})

            logger.debug(f"Tier {tier.name} could not parse SMS from {sender}")

        logger.warning(f"All parser tiers failed for SMS from {sender}; storing unparsed")
        return self.unparsed(sender, body)

    def unparsed(self, sender: str, body: str) -> ParsedTransaction:
        return ParsedTransaction(
            amount_minor_units=0,
            currency_code=self.settings.default_currency,
            direction=Direction.UNKNOWN,
            provider_id=ProviderId.UNKNOWN,
            sender=sender,
            raw_message=body,
            parsed_by=ParsedBy.TIER_NONE,
            confidence=0.0,
            sync_state=SyncState.FAILED,
        )


def build_parser_chain(settings: Settings) -> ParserChain:
    """Wire the production tiers: OpenAI, then Anthropic, then regex."""
    from momo_relay.ai.sms_parser import AnthropicTier, OpenAiTier
    from momo_relay.parsing.regex_parser import RegexParser, RegexTier

    return ParserChain(
        settings,
        [
            OpenAiTier(settings),
            AnthropicTier(settings),
            RegexTier(RegexParser(default_country_code=settings.default_country_code)),
        ],
    )
