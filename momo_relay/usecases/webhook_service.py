"""
Webhook service for operator management of webhook endpoints.
"""

import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from momo_relay.domain.webhook import (
    WebhookConfig,
    WebhookCreate,
    WebhookUpdate,
    generate_hmac_secret,
    validate_webhook_url,
)
from momo_relay.utils.time import now_ms

logger = logging.getLogger(__name__)


class WebhookNotFound(LookupError):
    """Raised when a webhook id does not exist."""


class WebhookConflict(ValueError):
    """Raised when a webhook URL is already configured."""


class WebhookService:
    """Service class for webhook configuration operations."""

    def __init__(self, session: AsyncSession, allow_insecure: bool = False):
        self.session = session
        self.allow_insecure = allow_insecure

    async def create(self, data: WebhookCreate) -> WebhookConfig:
        """
        Create a webhook.

        Args:
            data: Webhook fields; a signing secret is generated when omitted

        Returns:
            The stored webhook

        Raises:
            InsecureWebhookUrl: If the URL uses plain HTTP without an override
            ValueError: If the URL is malformed
            WebhookConflict: If the URL is already configured
        """
        url = validate_webhook_url(data.url, self.allow_insecure or data.allow_insecure_transport)
        await self._ensure_unique_url(url)

        timestamp = now_ms()
        webhook = WebhookConfig(
            name=data.name.strip(),
            url=url,
            phone_match_pattern=data.phone_match_pattern,
            api_key=data.api_key,
            hmac_secret=data.hmac_secret or generate_hmac_secret(),
            is_active=data.is_active,
            allow_insecure_transport=data.allow_insecure_transport,
            created_at_ms=timestamp,
            updated_at_ms=timestamp,
        )
        self.session.add(webhook)
        await self.session.commit()
        await self.session.refresh(webhook)

        logger.info(f"Created webhook {webhook.id} - {webhook.name}")
        return webhook

    async def update(self, webhook_id: int, data: WebhookUpdate) -> WebhookConfig:
        webhook = await self._require(webhook_id)
        changes = data.model_dump(exclude_unset=True)

        allow_insecure = changes.get("allow_insecure_transport", webhook.allow_insecure_transport)
        url = changes.get("url", webhook.url)
        if "url" in changes or "allow_insecure_transport" in changes:
            url = validate_webhook_url(url, self.allow_insecure or allow_insecure)
            if url != webhook.url:
                await self._ensure_unique_url(url)
            changes["url"] = url

        if "phone_match_pattern" in changes and changes["phone_match_pattern"] is not None:
            changes["phone_match_pattern"] = changes["phone_match_pattern"].strip()

        for field, value in changes.items():
            if value is None:
                continue
            setattr(webhook, field, value)

        webhook.updated_at_ms = now_ms()
        await self.session.commit()
        await self.session.refresh(webhook)

        logger.info(f"Updated webhook {webhook.id}: {', '.join(changes) or 'no changes'}")
        return webhook

    async def delete(self, webhook_id: int) -> None:
        """
        Delete a webhook.

        The row is kept, deactivated and marked deleted, so its delivery log
        entries stay available for auditing. Pending deliveries to it fail
        without an attempt.
        """
        webhook = await self._require(webhook_id)

        timestamp = now_ms()
        webhook.is_active = False
        webhook.deleted_at_ms = timestamp
        webhook.updated_at_ms = timestamp
        await self.session.commit()

        logger.info(f"Deleted webhook {webhook_id}")

    async def get(self, webhook_id: int) -> Optional[WebhookConfig]:
        webhook = await self.session.get(WebhookConfig, webhook_id)
        if webhook is None or webhook.is_deleted:
            return None
        return webhook

    async def list(self, active_only: bool = False) -> List[WebhookConfig]:
        query = select(WebhookConfig).where(WebhookConfig.deleted_at_ms.is_(None))
        if active_only:
            query = query.where(WebhookConfig.is_active.is_(True))
        result = await self.session.execute(query.order_by(WebhookConfig.id))
        return list(result.scalars().all())

    async def set_active(self, webhook_id: int, active: bool) -> WebhookConfig:
        webhook = await self._require(webhook_id)
        webhook.is_active = active
        webhook.updated_at_ms = now_ms()
        await self.session.commit()
        await self.session.refresh(webhook)
        logger.info(f"Webhook {webhook_id} {'activated' if active else 'deactivated'}")
        return webhook

    async def _require(self, webhook_id: int) -> WebhookConfig:
        webhook = await self.get(webhook_id)
        if webhook is None:
            raise WebhookNotFound(f"Webhook {webhook_id} not found")
        return webhook

    async def _ensure_unique_url(self, url: str) -> None:
        result = await self.session.execute(select(WebhookConfig.id).where(
            WebhookConfig.url == url,
            WebhookConfig.deleted_at_ms.is_(None),
        ))
        if result.scalar_one_or_none() is not None:
            raise WebhookConflict(f"A webhook for {url} already exists")
