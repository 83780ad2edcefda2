"""
Regex fallback parser for mobile money SMS.
Offline, free and deterministic; used when the AI tiers are disabled or fail.
"""

import logging
from typing import List, Optional

from momo_relay.domain.transaction import Direction, ParsedBy, ParsedTransaction
from momo_relay.parsing.currency import parse_amount, to_minor_units
from momo_relay.parsing.patterns import MessagePattern, PatternRegistry, ProviderRules, default_registry

logger = logging.getLogger(__name__)

REGEX_CONFIDENCE = 0.70


class RegexParser:
    """Parse SMS bodies against the pattern registry."""

    def __init__(self, registry: Optional[PatternRegistry] = None, default_country_code: str = "GH"):
        self.registry = registry or default_registry()
        self.default_country_code = default_country_code.upper()

    def _country_order(self, country_code: Optional[str]) -> List[str]:
        first = (country_code or self.default_country_code).upper()
        return [first] + [c for c in self.registry.countries() if c != first]

    def parse(self, sender: str, body: str, country_code: Optional[str] = None) -> Optional[ParsedTransaction]:
        """
        Parse an SMS using the registered provider rules.

        Args:
            sender: SMS sender id (e.g. "MTN MoMo")
            body: SMS text
            country_code: Country to try first; falls back to the default

        Returns:
            ParsedTransaction tagged TIER_REGEX, or None if no rule matched
        """
        if not body:
            return None

        for country in self._country_order(country_code):
            rules = self.registry.detect_provider(country, sender)
            if rules is None:
                continue

            parsed = self._parse_with_rules(rules, sender, body)
            if parsed is not None:
                logger.debug(f"Regex match for {country}/{rules.provider_id.value}")
                return parsed

        logger.debug(f"No regex rule matched SMS from {sender}")
        return None

    def _parse_with_rules(self, rules: ProviderRules, sender: str, body: str) -> Optional[ParsedTransaction]:
        for pattern, direction in ((rules.received, Direction.RECEIVED), (rules.sent, Direction.SENT)):
            match = pattern.regex.search(body)
            if match is None:
                continue

            amount = self._minor_units(match.group(pattern.amount_group), rules.currency_code)
            if amount is None:
                continue

            return ParsedTransaction(
                amount_minor_units=amount,
                currency_code=rules.currency_code,
                direction=direction,
                counterparty_phone=self._party(match, pattern),
                provider_id=rules.provider_id,
                transaction_reference=self._search(rules.transaction_id, body),
                balance_minor_units=self._balance(rules, body),
                sender=sender,
                raw_message=body,
                parsed_by=ParsedBy.TIER_REGEX,
                confidence=REGEX_CONFIDENCE,
            )
        return None

    @staticmethod
    def _party(match, pattern: MessagePattern) -> Optional[str]:
        party = match.group(pattern.party_group)
        party = party.strip() if party else ""
        return party or None

    @staticmethod
    def _minor_units(text: Optional[str], currency_code: str) -> Optional[int]:
        amount = parse_amount(text)
        if amount is None:
            return None
        return to_minor_units(amount, currency_code)

    @staticmethod
    def _search(regex, body: str) -> Optional[str]:
        if regex is None:
            return None
        match = regex.search(body)
        return match.group(1).strip() if match else None

    def _balance(self, rules: ProviderRules, body: str) -> Optional[int]:
        return self._minor_units(self._search(rules.balance, body), rules.currency_code)


class RegexTier:
    """Adapts RegexParser to the parser chain's tier interface."""

    name = "regex"
    parsed_by = ParsedBy.TIER_REGEX
    confidence = REGEX_CONFIDENCE
    enabled = True

    def __init__(self, parser: RegexParser):
        self.parser = parser

    async def parse(self, sender: str, body: str) -> Optional[ParsedTransaction]:
        return self.parser.parse(sender, body)
