"""
Pattern registry: per-country, per-provider regular expressions for mobile
money SMS.

Sentence structure differs by locale, so every message pattern declares which
capture group holds the amount and which holds the counterparty. Lookup is by
explicit (country, provider) key; sender detection within a country is
first-registered-wins, so when adding a locale register the provider with the
most specific sender ids first.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from momo_relay.domain.transaction import ProviderId

logger = logging.getLogger(__name__)

_FLAGS = re.IGNORECASE


@dataclass(frozen=True)
class MessagePattern:
    """A compiled message regex plus the group indices it uses."""
    regex: Pattern
    amount_group: int
    party_group: int


@dataclass(frozen=True)
class ProviderRules:
    """Everything needed to recognise and parse one provider's SMS in one country."""
    provider_id: ProviderId
    provider_name: str
    sender_ids: Tuple[str, ...]
    currency_code: str
    received: MessagePattern
    sent: MessagePattern
    balance: Optional[Pattern] = None
    transaction_id: Optional[Pattern] = None

    def matches_sender(self, sender: str) -> bool:
        sender_lower = (sender or "").lower()
        return any(sender_id.lower() in sender_lower for sender_id in self.sender_ids)


def message_pattern(regex: str, amount_group: int = 1, party_group: int = 2) -> MessagePattern:
    return MessagePattern(re.compile(regex, _FLAGS), amount_group, party_group)


class PatternRegistry:
    """Registry of provider rules keyed by country code."""

    def __init__(self):
        self._rules: Dict[str, List[ProviderRules]] = {}

    def register(self, country_code: str, rules: ProviderRules) -> None:
        """
        Register a provider's rules for a country.

        Raises:
            ValueError: If the (country, provider) key is already registered
        """
        country = country_code.upper()
        if self.get_rules(country, rules.provider_id) is not None:
            raise ValueError(f"Rules for {country}/{rules.provider_id.value} are already registered")

        self._rules.setdefault(country, []).append(rules)
        logger.debug(f"Registered SMS rules for {country}/{rules.provider_id.value}")

    def register_all(self, country_code: str, rules: Iterable[ProviderRules]) -> None:
        for provider_rules in rules:
            self.register(country_code, provider_rules)

    def detect_provider(self, country_code: str, sender: str) -> Optional[ProviderRules]:
        """Find the first registered provider in a country whose sender ids match."""
        for rules in self._rules.get(country_code.upper(), []):
            if rules.matches_sender(sender):
                return rules
        return None

    def get_rules(self, country_code: str, provider_id: ProviderId) -> Optional[ProviderRules]:
        for rules in self._rules.get(country_code.upper(), []):
            if rules.provider_id == provider_id:
                return rules
        return None

    def countries(self) -> List[str]:
        """Registered country codes in registration order."""
        return list(self._rules.keys())

    def rules_for(self, country_code: str) -> List[ProviderRules]:
        return list(self._rules.get(country_code.upper(), []))

    def sender_ids(self) -> List[str]:
        """Every known provider sender id across all countries."""
        ids = []
        for rules_list in self._rules.values():
            for rules in rules_list:
                ids.extend(sid for sid in rules.sender_ids if sid not in ids)
        return ids


# Shared fragments
_PHONE = r"(\+?\d{9,13})"
_PHONE_OR_NAME = r"(\+?\d{9,13}|[A-Za-z][A-Za-z .'-]*?)(?=[.,]|\s+on\s|\s*$)"
_DECIMAL = r"([\d,]+(?:\.\d{1,2})?)"
_WHOLE = r"([\d,]+)"
_SPACED = r"([\d][\d\s,]*?)"


GHANA_RULES = [
    ProviderRules(
        provider_id=ProviderId.MTN,
        provider_name="MTN Mobile Money",
        sender_ids=("MobileMoney", "MTN", "MoMo"),
        currency_code="GHS",
        received=message_pattern(rf"(?:received|credited with)\s+GHS\s?{_DECIMAL}\s+from\s+{_PHONE_OR_NAME}"),
        sent=message_pattern(rf"(?:sent|transferred|paid)\s+GHS\s?{_DECIMAL}\s+to\s+{_PHONE_OR_NAME}"),
        balance=re.compile(rf"balance(?:\s+is)?[:\s]*GHS\s?{_DECIMAL}", _FLAGS),
        transaction_id=re.compile(r"Transaction ID[:\s]+([A-Za-z0-9]+)", _FLAGS),
    ),
    ProviderRules(
        provider_id=ProviderId.VODAFONE,
        provider_name="Vodafone Cash",
        sender_ids=("VodaCash", "Vodafone", "T-CASH"),
        currency_code="GHS",
        received=message_pattern(
            rf"received\s+(?:for\s+)?GHS\s?{_DECIMAL}\s+from\s+(.+?)(?=\s+Current Balance|[.,]|\s*$)"
        ),
        sent=message_pattern(
            rf"(?:sent|transfer of|payment of)\s+GHS\s?{_DECIMAL}\s+to\s+(.+?)(?=\s+Current Balance|[.,]|\s*$)"
        ),
        balance=re.compile(rf"Current Balance:\s*GHS\s?{_DECIMAL}", _FLAGS),
        transaction_id=re.compile(r"Transaction Id:\s*([A-Za-z0-9]+)", _FLAGS),
    ),
    ProviderRules(
        provider_id=ProviderId.AIRTELTIGO,
        provider_name="AirtelTigo Money",
        sender_ids=("AirtelTigo", "ATMoney"),
        currency_code="GHS",
        # Counterparty precedes the amount in AirtelTigo messages
        received=message_pattern(
            rf"received from\s+(\+?\d{{9,13}}|[A-Za-z][A-Za-z .'-]*?)\s+of\s+GHS\s?{_DECIMAL}",
            amount_group=2, party_group=1,
        ),
        sent=message_pattern(
            rf"sent to\s+(\+?\d{{9,13}}|[A-Za-z][A-Za-z .'-]*?)\s+(?:an amount\s+)?of\s+GHS\s?{_DECIMAL}",
            amount_group=2, party_group=1,
        ),
        balance=re.compile(rf"Bal:\s*GHS\s?{_DECIMAL}", _FLAGS),
        transaction_id=re.compile(r"Trans ID:\s*([A-Za-z0-9]+)", _FLAGS),
    ),
]

RWANDA_RULES = [
    ProviderRules(
        provider_id=ProviderId.MTN,
        provider_name="MTN MoMo Rwanda",
        sender_ids=("M-Money", "MTN", "MoMo"),
        currency_code="RWF",
        received=message_pattern(rf"received\s+{_WHOLE}\s*RWF\s+from\s+(.+?)\s*(?:\(|\s+on\s)"),
        sent=message_pattern(rf"{_WHOLE}\s*RWF\s+transferred to\s+(.+?)\s*(?:\(|\s+at\s)"),
        balance=re.compile(rf"new balance\s*:\s*{_WHOLE}\s*RWF", _FLAGS),
        transaction_id=re.compile(r"Financial Transaction Id:\s*(\d+)", _FLAGS),
    ),
    ProviderRules(
        provider_id=ProviderId.AIRTEL,
        provider_name="Airtel Money Rwanda",
        sender_ids=("AirtelMoney", "Airtel Money", "Airtel"),
        currency_code="RWF",
        received=message_pattern(rf"received\s+RWF\s?{_WHOLE}\s+from\s+{_PHONE_OR_NAME}"),
        sent=message_pattern(rf"sent\s+RWF\s?{_WHOLE}\s+to\s+{_PHONE_OR_NAME}"),
        balance=re.compile(rf"Balance\s+RWF\s?{_WHOLE}", _FLAGS),
        transaction_id=re.compile(r"TID:\s*([A-Za-z0-9]+)", _FLAGS),
    ),
]

TANZANIA_RULES = [
    ProviderRules(
        provider_id=ProviderId.VODACOM,
        provider_name="Vodacom M-Pesa",
        sender_ids=("M-PESA", "MPESA", "Vodacom"),
        currency_code="TZS",
        received=message_pattern(
            rf"Confirmed\.\s*Tsh\s?{_DECIMAL}\s+received from\s+[A-Za-z .'-]*?\s*{_PHONE}\s+on\s"
        ),
        sent=message_pattern(
            rf"Confirmed\.\s*Tsh\s?{_DECIMAL}\s+sent to\s+[A-Za-z .'-]*?\s*{_PHONE}\s+on\s"
        ),
        balance=re.compile(rf"balance is\s+Tsh\s?{_DECIMAL}", _FLAGS),
        transaction_id=re.compile(r"([A-Z0-9]{8,12})\s+Confirmed", _FLAGS),
    ),
    ProviderRules(
        provider_id=ProviderId.TIGO,
        provider_name="Tigo Pesa",
        sender_ids=("Tigo Pesa", "TigoPesa", "Tigo"),
        currency_code="TZS",
        received=message_pattern(rf"received\s+TSh\s?{_WHOLE}\s+from\s+[A-Za-z .'-]*?,?\s*{_PHONE}"),
        sent=message_pattern(rf"sent to\s+{_PHONE}\s+TSh\s?{_WHOLE}", amount_group=2, party_group=1),
        balance=re.compile(rf"New balance is\s+TSh\s?{_WHOLE}", _FLAGS),
        transaction_id=re.compile(r"Transaction ID:\s*([A-Z0-9]+(?:\.[A-Z0-9]+)*)", _FLAGS),
    ),
]

DRC_RULES = [
    ProviderRules(
        provider_id=ProviderId.ORANGE,
        provider_name="Orange Money RDC",
        sender_ids=("OrangeMoney", "Orange Money", "Orange"),
        currency_code="CDF",
        received=message_pattern(rf"re[cç]u\s+{_SPACED}\s*CDF\s+de\s+{_PHONE}"),
        sent=message_pattern(rf"Transfert vers\s+{_PHONE}\s+de\s+{_SPACED}\s*CDF", amount_group=2, party_group=1),
        balance=re.compile(rf"Nouveau solde\s*:\s*{_SPACED}\s*CDF", _FLAGS),
        transaction_id=re.compile(r"ID transaction\s*:\s*([A-Z0-9]+(?:\.[A-Z0-9]+)*)", _FLAGS),
    ),
]

BURUNDI_RULES = [
    ProviderRules(
        provider_id=ProviderId.LUMICASH,
        provider_name="Lumicash",
        sender_ids=("Lumicash", "LUMITEL"),
        currency_code="BIF",
        received=message_pattern(rf"received\s+{_WHOLE}\s*BIF\s+from\s+(\+?\d{{8,13}})"),
        sent=message_pattern(rf"sent\s+{_WHOLE}\s*BIF\s+to\s+(\+?\d{{8,13}})"),
        balance=re.compile(rf"Balance:\s*{_WHOLE}\s*BIF", _FLAGS),
        transaction_id=re.compile(r"Ref:\s*([A-Za-z0-9]+)", _FLAGS),
    ),
]

ZAMBIA_RULES = [
    ProviderRules(
        provider_id=ProviderId.MTN,
        provider_name="MTN MoMo Zambia",
        sender_ids=("MTN MoMo", "MoMo", "MTN"),
        currency_code="ZMW",
        received=message_pattern(rf"received\s+(?:ZMW|K)\s?{_DECIMAL}\s+from\s+{_PHONE}"),
        sent=message_pattern(rf"sent\s+(?:ZMW|K)\s?{_DECIMAL}\s+to\s+{_PHONE}"),
        balance=re.compile(rf"new balance is\s+(?:ZMW|K)\s?{_DECIMAL}", _FLAGS),
        transaction_id=re.compile(r"Transaction ID:\s*([A-Za-z0-9]+)", _FLAGS),
    ),
]


def default_registry() -> PatternRegistry:
    """Build the registry with every bundled locale."""
    registry = PatternRegistry()
    registry.register_all("GH", GHANA_RULES)
    registry.register_all("RW", RWANDA_RULES)
    registry.register_all("TZ", TANZANIA_RULES)
    registry.register_all("CD", DRC_RULES)
    registry.register_all("BI", BURUNDI_RULES)
    registry.register_all("ZM", ZAMBIA_RULES)
    return registry
