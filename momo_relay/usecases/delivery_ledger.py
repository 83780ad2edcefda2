"""
Delivery ledger: one audit entry per (webhook, event), updated on every attempt.

Retries always reuse the same entry, re-send the stored payload and re-sign it
with the webhook's current secret.
"""

import logging
from typing import List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_exponential

from momo_relay.config.settings import Settings
from momo_relay.domain.delivery_log import (
    MAX_ERROR_LENGTH,
    MAX_MESSAGE_PREVIEW_LENGTH,
    DeliveryEvent,
    DeliveryLog,
    DeliveryOutcome,
    DeliveryStatus,
)
from momo_relay.domain.webhook import WebhookConfig
from momo_relay.infrastructure.webhook_client import AttemptResult, WebhookClient
from momo_relay.utils.time import now_ms

logger = logging.getLogger(__name__)


class DeliveryLogNotFound(LookupError):
    """Raised when a delivery log entry does not exist."""


def idempotency_key(webhook_id: int, event_ref: str) -> str:
    return f"{webhook_id}:{event_ref}"


def outcome_from_entry(entry: DeliveryLog) -> DeliveryOutcome:
    return DeliveryOutcome(
        webhook_id=entry.webhook_id,
        entry_id=entry.id,
        status=entry.status,
        retry_count=entry.retry_count,
        response_code=entry.response_code,
        response_body=entry.response_body,
        retryable=bool(entry.retryable) and entry.status == DeliveryStatus.FAILED,
        error=entry.last_error,
    )


def _should_retry(outcome: DeliveryOutcome) -> bool:
    return outcome.status == DeliveryStatus.FAILED and outcome.retryable


class DeliveryLedger:
    """Records and performs webhook deliveries."""

    def __init__(self, session_factory: async_sessionmaker, client: WebhookClient, settings: Settings):
        self.session_factory = session_factory
        self.client = client
        self.settings = settings

    async def record(
        self,
        webhook_id: int,
        event: DeliveryEvent,
        payload: str,
        outcome: Optional[DeliveryOutcome] = None,
    ) -> DeliveryLog:
        """
        Find or create the entry for (webhook, event).

        Args:
            webhook_id: Target webhook
            event: The relayed event
            payload: Canonical JSON body to send
            outcome: Optional attempt result to apply to the entry

        Returns:
            The ledger entry; at most one exists per (webhook, event)
        """
        async with self.session_factory() as session:
            entry = await self._find(session, webhook_id, event.event_ref)
            if entry is None:
                timestamp = now_ms()
                entry = DeliveryLog(
                    webhook_id=webhook_id,
                    event_ref=event.event_ref,
                    phone_number=event.phone_number or "",
                    sender=event.sender,
                    message=(event.message or "")[:MAX_MESSAGE_PREVIEW_LENGTH],
                    payload=payload,
                    status=DeliveryStatus.PENDING,
                    retry_count=0,
                    retryable=True,
                    created_at_ms=timestamp,
                    updated_at_ms=timestamp,
                )
                session.add(entry)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another worker created it first
                    await session.rollback()
                    entry = await self._find(session, webhook_id, event.event_ref)
                    if entry is None:
                        raise

            if outcome is not None:
                self._apply(entry, outcome)
                await session.commit()

            await session.refresh(entry)
            return entry

    async def attempt(self, entry_id: int) -> DeliveryOutcome:
        """
        Make one delivery attempt for an entry.

        The entry moves to SENT with retry_count incremented before the
        request, then to DELIVERED or FAILED with the response recorded.
        """
        async with self.session_factory() as session:
            entry = await self._require(session, entry_id)
            if entry.status == DeliveryStatus.DELIVERED:
                return outcome_from_entry(entry)

            webhook = await session.get(WebhookConfig, entry.webhook_id)
            reason = None
            if webhook is None or webhook.is_deleted:
                reason = "webhook deleted"
            elif not webhook.is_active:
                reason = "webhook inactive"

            if reason is not None:
                entry.status = DeliveryStatus.FAILED
                entry.retryable = False
                entry.last_error = reason
                entry.updated_at_ms = now_ms()
                await session.commit()
                logger.info(f"Skipped delivery {entry_id}: {reason}")
                return outcome_from_entry(entry)

            entry.status = DeliveryStatus.SENT
            entry.retry_count = (entry.retry_count or 0) + 1
            entry.updated_at_ms = now_ms()
            await session.commit()

            payload = entry.payload
            key = idempotency_key(entry.webhook_id, entry.event_ref)

        try:
            result = await self.client.post(webhook, payload, key)
        except Exception as e:
            # Never leave the entry stuck in SENT
            logger.exception(f"Delivery {entry_id} to webhook {entry.webhook_id} raised: {e}")
            result = AttemptResult(error=f"{type(e).__name__}: {e}")

        async with self.session_factory() as session:
            entry = await self._require(session, entry_id)
            timestamp = now_ms()
            entry.response_code = result.status_code
            entry.response_body = result.response_body
            entry.updated_at_ms = timestamp
            if result.delivered:
                entry.status = DeliveryStatus.DELIVERED
                entry.retryable = False
                entry.last_error = None
                entry.delivered_at_ms = timestamp
            else:
                entry.status = DeliveryStatus.FAILED
                entry.retryable = result.retryable
                entry.last_error = (result.error or "delivery failed")[:MAX_ERROR_LENGTH]
            await session.commit()
            return outcome_from_entry(entry)

    async def deliver(self, entry_id: int, max_attempts: Optional[int] = None) -> DeliveryOutcome:
        """
        Deliver an entry, retrying retryable failures inline with exponential backoff.

        Args:
            entry_id: Ledger entry to deliver
            max_attempts: Attempt budget for this call (default webhook_max_attempts)

        Returns:
            The outcome of the last attempt
        """
        attempts = max_attempts or self.settings.webhook_max_attempts
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.settings.webhook_backoff_seconds, max=60),
            retry=retry_if_result(_should_retry),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        return await retrying(self.attempt, entry_id)

    async def retry(self, entry_id: int) -> DeliveryOutcome:
        """Re-attempt an entry once. DELIVERED entries are returned unchanged."""
        logger.info(f"Retrying delivery {entry_id}")
        return await self.attempt(entry_id)

    async def get(self, entry_id: int) -> Optional[DeliveryLog]:
        async with self.session_factory() as session:
            return await session.get(DeliveryLog, entry_id)

    async def list_entries(
        self,
        status: Optional[DeliveryStatus] = None,
        webhook_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[DeliveryLog]:
        query = select(DeliveryLog)
        if status is not None:
            query = query.where(DeliveryLog.status == status)
        if webhook_id is not None:
            query = query.where(DeliveryLog.webhook_id == webhook_id)
        query = query.order_by(DeliveryLog.id.desc()).limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_by_status(self, status: DeliveryStatus, limit: int = 100) -> List[DeliveryLog]:
        return await self.list_entries(status=status, limit=limit)

    async def list_by_webhook(self, webhook_id: int, limit: int = 100) -> List[DeliveryLog]:
        return await self.list_entries(webhook_id=webhook_id, limit=limit)

    async def list_retryable(
        self,
        max_attempts: int,
        limit: int = 100,
        stale_before_ms: Optional[int] = None,
    ) -> List[DeliveryLog]:
        """
        Entries the sweep should (re)deliver, oldest first.

        Args:
            max_attempts: Skip entries that already used this many attempts
            limit: Maximum entries returned
            stale_before_ms: SENT entries last touched before this are treated
                as interrupted (default: now minus the webhook timeout)

        Returns:
            Retryable FAILED entries, PENDING entries that were never
            attempted to completion, and stale SENT entries
        """
        if stale_before_ms is None:
            stale_before_ms = now_ms() - int(self.settings.webhook_timeout_seconds * 1000)

        async with self.session_factory() as session:
            result = await session.execute(
                select(DeliveryLog)
                .where(
                    or_(
                        (DeliveryLog.status == DeliveryStatus.FAILED) & DeliveryLog.retryable.is_(True),
                        DeliveryLog.status == DeliveryStatus.PENDING,
                        (DeliveryLog.status == DeliveryStatus.SENT)
                        & (DeliveryLog.updated_at_ms < stale_before_ms),
                    ),
                    DeliveryLog.retry_count < max_attempts,
                )
                .order_by(DeliveryLog.updated_at_ms, DeliveryLog.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def pending_count(self) -> int:
        """Entries not yet settled: PENDING, SENT, and retryable FAILED."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(DeliveryLog.id)).where(or_(
                    DeliveryLog.status.in_([DeliveryStatus.PENDING, DeliveryStatus.SENT]),
                    (DeliveryLog.status == DeliveryStatus.FAILED) & DeliveryLog.retryable.is_(True),
                ))
            )
            return result.scalar_one()

    async def purge_delivered(self, before_ms: int) -> int:
        """Delete DELIVERED entries older than the cutoff. Returns the number removed."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(DeliveryLog).where(
                    DeliveryLog.status == DeliveryStatus.DELIVERED,
                    DeliveryLog.updated_at_ms < before_ms,
                )
            )
            await session.commit()
            logger.info(f"Purged {result.rowcount} delivered log entries")
            return result.rowcount

    @staticmethod
    def _apply(entry: DeliveryLog, outcome: DeliveryOutcome) -> None:
        entry.status = outcome.status
        entry.retry_count = max(entry.retry_count or 0, outcome.retry_count)
        entry.response_code = outcome.response_code
        entry.response_body = outcome.response_body
        entry.retryable = outcome.retryable
        entry.last_error = outcome.error[:MAX_ERROR_LENGTH] if outcome.error else None
        entry.updated_at_ms = now_ms()
        if outcome.status == DeliveryStatus.DELIVERED:
            entry.delivered_at_ms = entry.updated_at_ms

    @staticmethod
    async def _find(session: AsyncSession, webhook_id: int, event_ref: str) -> Optional[DeliveryLog]:
        result = await session.execute(
            select(DeliveryLog).where(
                DeliveryLog.webhook_id == webhook_id,
                DeliveryLog.event_ref == event_ref,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _require(session: AsyncSession, entry_id: int) -> DeliveryLog:
        entry = await session.get(DeliveryLog, entry_id)
        if entry is None:
            raise DeliveryLogNotFound(f"Delivery log {entry_id} not found")
        return entry
