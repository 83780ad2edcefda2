"""
Transaction store: the durable, append-only ledger of parsed SMS.

Persisting here is the durability boundary; nothing touches the network for a
message until it has been appended. After insert only the relay and sync
bookkeeping columns change.
"""

import logging
import uuid
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momo_relay.domain.transaction import ParsedTransaction, SyncState, Transaction
from momo_relay.utils.time import now_ms

logger = logging.getLogger(__name__)

MAX_SYNC_ERROR_LENGTH = 500


class TransactionNotFound(LookupError):
    """Raised when a transaction id does not exist."""


class TransactionStore:
    """Async persistence for transactions; one short session per operation."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def append(
        self,
        parsed: ParsedTransaction,
        phone_number: str = "",
        received_at_ms: Optional[int] = None,
    ) -> int:
        """
        Persist a parsed transaction.

        Args:
            parsed: Result of the parser chain
            phone_number: Device number the SMS arrived on ("" if unknown)
            received_at_ms: When the SMS arrived; used if the relay is redone

        Returns:
            The new transaction id
        """
        transaction = Transaction(
            idempotency_key=str(uuid.uuid4()),
            amount_minor_units=parsed.amount_minor_units,
            currency_code=parsed.currency_code,
            direction=parsed.direction,
            counterparty_phone=parsed.counterparty_phone,
            provider_id=parsed.provider_id,
            transaction_reference=parsed.transaction_reference,
            balance_minor_units=parsed.balance_minor_units,
            sender=parsed.sender,
            raw_message=parsed.raw_message,
            parsed_by=parsed.parsed_by,
            confidence=parsed.confidence,
            occurred_at_ms=parsed.occurred_at_ms,
            created_at_ms=now_ms(),
            device_phone=phone_number or "",
            received_at_ms=received_at_ms,
            sync_state=parsed.sync_state,
            sync_attempts=0,
        )

        async with self.session_factory() as session:
            session.add(transaction)
            await session.commit()
            await session.refresh(transaction)

        logger.info(
            f"Stored transaction {transaction.id} ({transaction.parsed_by.value}, "
            f"{transaction.amount_minor_units} {transaction.currency_code})"
        )
        return transaction.id

    async def get(self, transaction_id: int) -> Optional[Transaction]:
        async with self.session_factory() as session:
            return await session.get(Transaction, transaction_id)

    async def get_many(self, transaction_ids: Iterable[int]) -> List[Transaction]:
        ids = list(transaction_ids)
        if not ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(Transaction).where(Transaction.id.in_(ids)).order_by(Transaction.id)
            )
            return list(result.scalars().all())

    async def mark_syncing(self, transaction_ids: Iterable[int]) -> None:
        ids = list(transaction_ids)
        if not ids:
            return
        async with self.session_factory() as session:
            await session.execute(
                update(Transaction)
                .where(Transaction.id.in_(ids))
                .values(sync_state=SyncState.SYNCING, last_sync_attempt_ms=now_ms())
            )
            await session.commit()

    async def mark_synced(self, transaction_id: int, remote_id: str) -> None:
        """
        Mark a transaction as accepted by the backend.

        Raises:
            ValueError: If remote_id is empty; a synced record must carry it
            TransactionNotFound: If the transaction does not exist
        """
        if remote_id is None or not str(remote_id).strip():
            raise ValueError("remote_id is required to mark a transaction synced")

        async with self.session_factory() as session:
            transaction = await self._require(session, transaction_id)
            transaction.sync_state = SyncState.SYNCED
            transaction.remote_id = str(remote_id).strip()
            transaction.last_sync_error = None
            await session.commit()

        logger.debug(f"Transaction {transaction_id} synced as {remote_id}")

    async def mark_failed(self, transaction_id: int, reason: str) -> None:
        """Mark a sync attempt as failed and count it against the record."""
        async with self.session_factory() as session:
            transaction = await self._require(session, transaction_id)
            transaction.sync_state = SyncState.FAILED
            transaction.sync_attempts = (transaction.sync_attempts or 0) + 1
            transaction.last_sync_error = (reason or "")[:MAX_SYNC_ERROR_LENGTH]
            transaction.last_sync_attempt_ms = now_ms()
            await session.commit()

    async def list_pending(self, limit: int = 50, max_attempts: Optional[int] = None) -> List[Transaction]:
        """
        Records still awaiting upload, oldest first.

        PENDING, SYNCING left behind by an interrupted run, and FAILED below
        the attempt cap.
        """
        failed = Transaction.sync_state == SyncState.FAILED
        if max_attempts is not None:
            failed = failed & (Transaction.sync_attempts < max_attempts)

        query = (
            select(Transaction)
            .where(or_(
                Transaction.sync_state.in_([SyncState.PENDING, SyncState.SYNCING]),
                failed,
            ))
            .order_by(Transaction.created_at_ms, Transaction.id)
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def mark_relayed(self, transaction_id: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Transaction)
                .where(Transaction.id == transaction_id)
                .values(relayed_at_ms=now_ms())
            )
            await session.commit()

    async def list_unrelayed(self, created_before_ms: int, limit: int = 100) -> List[Transaction]:
        """Records stored before the cutoff whose webhook relay never completed, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Transaction)
                .where(
                    Transaction.relayed_at_ms.is_(None),
                    Transaction.created_at_ms < created_before_ms,
                )
                .order_by(Transaction.created_at_ms, Transaction.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def list_recent(self, limit: int = 50) -> List[Transaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Transaction).order_by(Transaction.id.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def requeue(self, transaction_id: int) -> Transaction:
        """Operator action: put a FAILED record back in the queue with a fresh attempt budget."""
        async with self.session_factory() as session:
            transaction = await self._require(session, transaction_id)
            if transaction.sync_state != SyncState.SYNCED:
                transaction.sync_state = SyncState.PENDING
                transaction.sync_attempts = 0
                transaction.last_sync_error = None
                await session.commit()
                await session.refresh(transaction)
                logger.info(f"Requeued transaction {transaction_id} for sync")
            return transaction

    async def count_by_state(self) -> Dict[str, int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Transaction.sync_state, func.count(Transaction.id)).group_by(Transaction.sync_state)
            )
            counts = {state.value: 0 for state in SyncState}
            for state, count in result.all():
                counts[state.value] = count
            return counts

    @staticmethod
    async def _require(session: AsyncSession, transaction_id: int) -> Transaction:
        transaction = await session.get(Transaction, transaction_id)
        if transaction is None:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return transaction
