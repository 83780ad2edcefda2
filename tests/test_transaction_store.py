"""
Tests for the transaction store.
"""

import pytest

from momo_relay.domain.transaction import ParsedBy, SyncState
from momo_relay.usecases.transaction_store import TransactionNotFound, TransactionStore
from momo_relay.utils.time import now_ms


@pytest.fixture
def store(session_factory):
    return TransactionStore(session_factory)


class TestAppend:
    """Tests for TransactionStore.append."""

    @pytest.mark.asyncio
    async def test_append_assigns_id_and_pending_state(self, store, sample_parsed):
        transaction_id = await store.append(sample_parsed)

        transaction = await store.get(transaction_id)
        assert transaction.amount_minor_units == 5000
        assert transaction.currency_code == "GHS"
        assert transaction.transaction_reference == "MP123456789"
        assert transaction.parsed_by == ParsedBy.TIER_REGEX
        assert transaction.sync_state == SyncState.PENDING
        assert transaction.sync_attempts == 0
        assert transaction.remote_id is None
        assert transaction.created_at_ms > 0

    @pytest.mark.asyncio
    async def test_each_append_gets_unique_idempotency_key(self, store, sample_parsed):
        first = await store.get(await store.append(sample_parsed))
        second = await store.get(await store.append(sample_parsed))

        assert first.id != second.id
        assert first.idempotency_key != second.idempotency_key
        assert len(first.idempotency_key) == 36

    @pytest.mark.asyncio
    async def test_unparsed_record_is_stored_failed(self, store, sample_parsed):
        unparsed = sample_parsed.model_copy(update={"sync_state": SyncState.FAILED})

        transaction = await store.get(await store.append(unparsed))

        assert transaction.sync_state == SyncState.FAILED

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get(999) is None

    @pytest.mark.asyncio
    async def test_get_many_skips_unknown_ids(self, store, sample_parsed):
        ids = [await store.append(sample_parsed) for _ in range(3)]

        found = await store.get_many([ids[2], 999, ids[0]])

        assert [t.id for t in found] == [ids[0], ids[2]]
        assert await store.get_many([]) == []


class TestSyncBookkeeping:
    """Tests for the sync state transitions."""

    @pytest.mark.asyncio
    async def test_mark_synced_records_remote_id(self, store, sample_parsed):
        transaction_id = await store.append(sample_parsed)

        await store.mark_syncing([transaction_id])
        assert (await store.get(transaction_id)).sync_state == SyncState.SYNCING

        await store.mark_synced(transaction_id, "remote-42")

        transaction = await store.get(transaction_id)
        assert transaction.sync_state == SyncState.SYNCED
        assert transaction.remote_id == "remote-42"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("remote_id", ["", "   ", None])
    async def test_mark_synced_requires_remote_id(self, store, sample_parsed, remote_id):
        transaction_id = await store.append(sample_parsed)

        with pytest.raises(ValueError):
            await store.mark_synced(transaction_id, remote_id)

        assert (await store.get(transaction_id)).sync_state == SyncState.PENDING

    @pytest.mark.asyncio
    async def test_mark_synced_unknown_id(self, store):
        with pytest.raises(TransactionNotFound):
            await store.mark_synced(999, "remote-1")

    @pytest.mark.asyncio
    async def test_mark_failed_counts_attempts(self, store, sample_parsed):
        transaction_id = await store.append(sample_parsed)

        await store.mark_failed(transaction_id, "timeout")
        await store.mark_failed(transaction_id, "x" * 1000)

        transaction = await store.get(transaction_id)
        assert transaction.sync_state == SyncState.FAILED
        assert transaction.sync_attempts == 2
        assert len(transaction.last_sync_error) == 500
        assert transaction.last_sync_attempt_ms is not None

    @pytest.mark.asyncio
    async def test_list_pending_covers_retryable_states_oldest_first(self, store, sample_parsed):
        pending = await store.append(sample_parsed)
        syncing = await store.append(sample_parsed)
        failed = await store.append(sample_parsed)
        exhausted = await store.append(sample_parsed)
        synced = await store.append(sample_parsed)

        await store.mark_syncing([syncing])
        await store.mark_failed(failed, "503")
        for _ in range(3):
            await store.mark_failed(exhausted, "503")
        await store.mark_synced(synced, "remote-1")

        result = await store.list_pending(limit=10, max_attempts=3)

        assert [t.id for t in result] == [pending, syncing, failed]

    @pytest.mark.asyncio
    async def test_list_pending_without_cap_and_with_limit(self, store, sample_parsed):
        ids = [await store.append(sample_parsed) for _ in range(4)]
        for _ in range(5):
            await store.mark_failed(ids[0], "down")

        assert [t.id for t in await store.list_pending(limit=10)] == ids
        assert [t.id for t in await store.list_pending(limit=2)] == ids[:2]

    @pytest.mark.asyncio
    async def test_requeue_resets_attempt_budget(self, store, sample_parsed):
        transaction_id = await store.append(sample_parsed)
        for _ in range(3):
            await store.mark_failed(transaction_id, "down")

        transaction = await store.requeue(transaction_id)

        assert transaction.sync_state == SyncState.PENDING
        assert transaction.sync_attempts == 0
        assert transaction.last_sync_error is None
        assert [t.id for t in await store.list_pending(max_attempts=3)] == [transaction_id]

    @pytest.mark.asyncio
    async def test_requeue_leaves_synced_untouched(self, store, sample_parsed):
        transaction_id = await store.append(sample_parsed)
        await store.mark_synced(transaction_id, "remote-9")

        transaction = await store.requeue(transaction_id)

        assert transaction.sync_state == SyncState.SYNCED
        assert transaction.remote_id == "remote-9"

    @pytest.mark.asyncio
    async def test_requeue_unknown_id(self, store):
        with pytest.raises(TransactionNotFound):
            await store.requeue(404)

    @pytest.mark.asyncio
    async def test_count_by_state_includes_every_state(self, store, sample_parsed):
        first = await store.append(sample_parsed)
        await store.append(sample_parsed)
        await store.mark_synced(first, "remote-1")

        counts = await store.count_by_state()

        assert counts == {"PENDING": 1, "SYNCING": 0, "SYNCED": 1, "FAILED": 0}

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, store, sample_parsed):
        ids = [await store.append(sample_parsed) for _ in range(3)]

        assert [t.id for t in await store.list_recent(limit=2)] == [ids[2], ids[1]]


class TestRelayBookkeeping:
    """Tests for the relay columns."""

    @pytest.mark.asyncio
    async def test_append_keeps_arrival_details(self, store, sample_parsed):
        transaction = await store.get(await store.append(sample_parsed, "+233200000000", 1700000000000))

        assert transaction.device_phone == "+233200000000"
        assert transaction.received_at_ms == 1700000000000
        assert transaction.relayed_at_ms is None

    @pytest.mark.asyncio
    async def test_list_unrelayed_until_marked(self, store, sample_parsed):
        first = await store.append(sample_parsed)
        second = await store.append(sample_parsed)
        cutoff = now_ms() + 1

        assert [t.id for t in await store.list_unrelayed(cutoff)] == [first, second]

        await store.mark_relayed(first)

        assert [t.id for t in await store.list_unrelayed(cutoff)] == [second]
        assert (await store.get(first)).relayed_at_ms is not None
        assert await store.list_unrelayed(0) == []
