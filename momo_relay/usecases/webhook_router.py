"""
Webhook router: fans an accepted SMS out to every matching webhook.
"""

import asyncio
import logging
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from momo_relay.config.settings import Settings
from momo_relay.domain.delivery_log import DeliveryEvent, DeliveryOutcome, DeliveryStatus
from momo_relay.domain.webhook import WebhookConfig
from momo_relay.infrastructure.webhook_client import build_payload
from momo_relay.usecases.delivery_ledger import DeliveryLedger, outcome_from_entry
from momo_relay.utils.time import now_ms

logger = logging.getLogger(__name__)


class WebhookRouter:
    """Matches events to webhooks and delivers them concurrently."""

    def __init__(self, session_factory: async_sessionmaker, ledger: DeliveryLedger, settings: Settings):
        self.session_factory = session_factory
        self.ledger = ledger
        self.settings = settings

    async def matching_webhooks(self, phone_number: str) -> List[WebhookConfig]:
        """Active webhooks whose pattern is a wildcard or equals the phone number."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookConfig)
                .where(WebhookConfig.is_active.is_(True), WebhookConfig.deleted_at_ms.is_(None))
                .order_by(WebhookConfig.id)
            )
            return [w for w in result.scalars().all() if w.matches(phone_number)]

    async def dispatch(
        self,
        phone_number: str,
        sender: str,
        message: str,
        event_ref: Optional[str] = None,
        timestamp_ms: Optional[int] = None,
    ) -> List[DeliveryOutcome]:
        """
        Deliver an SMS to all matching webhooks.

        Args:
            phone_number: Device number the SMS arrived on ("" if unknown)
            sender: SMS sender id
            message: SMS body
            event_ref: Stable event id; repeated dispatches reuse ledger entries
            timestamp_ms: Event time, defaults to now

        Returns:
            One outcome per matching webhook. A failure for one webhook never
            affects the others.
        """
        webhooks = await self.matching_webhooks(phone_number)
        if not webhooks:
            logger.debug(f"No webhooks match {phone_number or '<unknown>'}")
            return []

        event = DeliveryEvent(
            event_ref=event_ref or uuid.uuid4().hex,
            phone_number=phone_number or "",
            sender=sender,
            message=message,
            timestamp_ms=timestamp_ms if timestamp_ms is not None else now_ms(),
        )
        payload = build_payload(event, self.settings.device_id)

        logger.info(f"Dispatching event {event.event_ref} to {len(webhooks)} webhook(s)")
        return list(await asyncio.gather(*(self._deliver_one(w, event, payload) for w in webhooks)))

    async def _deliver_one(self, webhook: WebhookConfig, event: DeliveryEvent, payload: str) -> DeliveryOutcome:
        try:
            entry = await self.ledger.record(webhook.id, event, payload)
            if entry.status == DeliveryStatus.DELIVERED:
                logger.debug(f"Event {event.event_ref} already delivered to webhook {webhook.id}")
                return outcome_from_entry(entry)
            return await self.ledger.deliver(entry.id)
        except Exception as e:
            logger.exception(f"Delivery to webhook {webhook.id} failed: {e}")
            return DeliveryOutcome(
                webhook_id=webhook.id,
                entry_id=None,
                status=DeliveryStatus.FAILED,
                retryable=True,
                error=str(e),
            )
