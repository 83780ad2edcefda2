"""
Ingest gate: decides whether an inbound SMS is a mobile money message.

A message passes when its sender matches a known provider id or its body
contains a money keyword. Strict mode requires both.

Pure function of its inputs; no I/O. Rejected messages are logged with the
sender and the start of the body only.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from momo_relay.domain.transaction import RawMessage
from momo_relay.parsing.currency import CURRENCY_DECIMALS
from momo_relay.parsing.patterns import PatternRegistry

logger = logging.getLogger(__name__)

REJECTED_PREVIEW_LENGTH = 40

# Sender ids seen in the field that are not tied to a registered rule set
KNOWN_SENDERS = (
    "MobileMoney",
    "MoMo",
    "MTN",
    "M-Money",
    "VodaCash",
    "Vodafone",
    "AirtelTigo",
    "Airtel",
    "Tigo",
    "M-PESA",
    "MPESA",
    "Vodacom",
    "Halotel",
    "HaloPesa",
    "Lumicash",
    "EcoCash",
    "Orange",
    "Zamtel",
)

MONEY_KEYWORDS = (
    "received",
    "payment",
    "transferred",
    "credited",
    "debited",
    "withdraw",
    "airtime",
    "balance",
    "transaction",
    "momo",
    "mobile money",
    "m-pesa",
)


@dataclass(frozen=True)
class Accepted:
    message: RawMessage


@dataclass(frozen=True)
class Rejected:
    reason: str


GateDecision = Union[Accepted, Rejected]


class IngestGate:
    """Filters inbound SMS down to likely mobile money messages."""

    def __init__(
        self,
        registry: Optional[PatternRegistry] = None,
        extra_senders: Iterable[str] = KNOWN_SENDERS,
        keywords: Iterable[str] = MONEY_KEYWORDS,
        strict: bool = False,
    ):
        senders = list(registry.sender_ids()) if registry else []
        senders.extend(s for s in extra_senders if s not in senders)
        self.senders = tuple(s.lower() for s in senders)
        self.keywords = tuple(k.lower() for k in keywords) + tuple(c.lower() for c in CURRENCY_DECIMALS)
        # Strict mode needs both a known sender and a money keyword
        self.strict = strict

    def is_provider_sender(self, sender: str) -> bool:
        sender = (sender or "").lower()
        return any(known in sender for known in self.senders)

    def has_money_keyword(self, body: str) -> bool:
        body = (body or "").lower()
        return any(keyword in body for keyword in self.keywords)

    def accept(self, sender: str, body: str, received_at_ms: int, phone_number: str = "") -> GateDecision:
        """
        Decide whether an SMS should enter the pipeline.

        Args:
            sender: SMS sender id
            body: SMS text
            received_at_ms: Epoch milliseconds the SMS arrived
            phone_number: Device number the SMS arrived on, if known

        Returns:
            Accepted carrying the RawMessage, or Rejected with a reason
        """
        if not body or not body.strip():
            return self._reject(sender, body, "empty body")

        known_sender = self.is_provider_sender(sender)
        money_keyword = self.has_money_keyword(body)

        if self.strict:
            if not known_sender:
                return self._reject(sender, body, "unknown sender")
            if not money_keyword:
                return self._reject(sender, body, "no money keywords")
        elif not (known_sender or money_keyword):
            return self._reject(sender, body, "unknown sender and no money keywords")

        return Accepted(RawMessage(
            sender=sender,
            body=body,
            received_at_ms=received_at_ms,
            phone_number=phone_number or "",
        ))

    @staticmethod
    def _reject(sender: str, body: Optional[str], reason: str) -> Rejected:
        preview = (body or "")[:REJECTED_PREVIEW_LENGTH]
        logger.info(f"Rejected SMS from {sender} ({reason}): {preview!r}")
        return Rejected(reason)
