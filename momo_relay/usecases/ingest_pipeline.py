"""
Ingest pipeline: bounded work queue between the HTTP handler and the parsers.

The handler only enqueues; a fixed pool of worker tasks parses, stores, syncs
and relays. When the queue is full, submit() refuses instead of blocking so
the caller can push back on the forwarder.
"""

import asyncio
import logging
from typing import List, Optional

from momo_relay.domain.transaction import RawMessage, Transaction
from momo_relay.parsing.chain import ParserChain
from momo_relay.usecases.sync_coordinator import SyncCoordinator
from momo_relay.usecases.transaction_store import TransactionStore
from momo_relay.usecases.webhook_router import WebhookRouter

logger = logging.getLogger(__name__)


def event_ref_for(transaction: Transaction) -> str:
    """Stable relay event id: the provider reference, else the record's own key."""
    return transaction.transaction_reference or transaction.idempotency_key


class IngestPipeline:
    """Parses, persists and relays accepted SMS on background workers."""

    def __init__(
        self,
        chain: ParserChain,
        store: TransactionStore,
        sync: SyncCoordinator,
        router: WebhookRouter,
        queue_size: int = 256,
        workers: int = 4,
    ):
        self.chain = chain
        self.store = store
        self.sync = sync
        self.router = router
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.worker_count = workers
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def submit(self, message: RawMessage) -> bool:
        """
        Enqueue a message without blocking.

        Returns:
            False when the queue is full
        """
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(f"Ingest queue full ({self.queue.maxsize}); refusing SMS from {message.sender}")
            return False
        return True

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"ingest-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Ingest pipeline started with {self.worker_count} workers")

    async def stop(self, drain_timeout: float = 10.0) -> None:
        """Let queued messages finish (up to the timeout), then stop the workers."""
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self.queue.join(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Ingest queue not drained; {self.queue.qsize()} messages left unprocessed")

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Ingest pipeline stopped")

    async def _worker(self, index: int) -> None:
        while True:
            message = await self.queue.get()
            try:
                await self.process(message)
            except Exception as e:
                logger.exception(f"Worker {index} failed processing SMS from {message.sender}: {e}")
            finally:
                self.queue.task_done()

    async def process(self, message: RawMessage) -> Optional[int]:
        """
        Run one message through parse, store, sync and relay.

        Returns:
            The stored transaction id, or None if it could not be persisted
        """
        parsed = await self.chain.parse(message.sender, message.body)

        try:
            transaction_id = await self.store.append(parsed, message.phone_number, message.received_at_ms)
        except Exception as e:
            logger.exception(f"Failed to store SMS from {message.sender}: {e}")
            return None

        try:
            self.sync.on_transaction_appended(transaction_id)
        except Exception as e:
            logger.exception(f"Failed to schedule sync for transaction {transaction_id}: {e}")

        transaction = await self.store.get(transaction_id)
        await self._relay(
            transaction_id,
            message.phone_number,
            message.sender,
            message.body,
            event_ref_for(transaction) if transaction else None,
            message.received_at_ms,
        )
        return transaction_id

    async def resume_unrelayed(self, created_before_ms: int, batch_size: int = 100) -> int:
        """
        Redo the webhook relay for records a previous run stored but never relayed.

        Ledger entries are keyed by event, so webhooks that already got an
        entry are not sent to twice.

        Args:
            created_before_ms: Only records stored before this (normally process start)
            batch_size: Records loaded per query

        Returns:
            Number of records relayed
        """
        resumed = 0
        while True:
            try:
                transactions = await self.store.list_unrelayed(created_before_ms, limit=batch_size)
            except Exception as e:
                logger.exception(f"Failed to load unrelayed transactions: {e}")
                break
            if not transactions:
                break

            relayed = 0
            for transaction in transactions:
                if await self._relay(
                    transaction.id,
                    transaction.device_phone,
                    transaction.sender,
                    transaction.raw_message,
                    event_ref_for(transaction),
                    transaction.received_at_ms or transaction.created_at_ms,
                ):
                    relayed += 1
            resumed += relayed

            # Whatever is left keeps failing; the next start tries again
            if relayed == 0 or len(transactions) < batch_size:
                break

        if resumed:
            logger.info(f"Resumed webhook relay for {resumed} stored transactions")
        return resumed

    async def _relay(
        self,
        transaction_id: int,
        phone_number: str,
        sender: str,
        body: str,
        event_ref: Optional[str],
        timestamp_ms: Optional[int],
    ) -> bool:
        """Dispatch to webhooks and mark the record relayed once every target has a ledger entry."""
        try:
            outcomes = await self.router.dispatch(
                phone_number,
                sender,
                body,
                event_ref=event_ref,
                timestamp_ms=timestamp_ms,
            )
        except Exception as e:
            logger.exception(f"Webhook dispatch failed for transaction {transaction_id}: {e}")
            return False

        if any(outcome.entry_id is None for outcome in outcomes):
            logger.warning(f"Relay of transaction {transaction_id} incomplete; it will be redone on restart")
            return False

        try:
            await self.store.mark_relayed(transaction_id)
        except Exception as e:
            logger.exception(f"Failed to mark transaction {transaction_id} relayed: {e}")
            return False
        return True
