"""
Tests for the ingest gate and the bounded ingest pipeline.
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from momo_relay.domain.delivery_log import DeliveryOutcome, DeliveryStatus
from momo_relay.domain.transaction import ParsedBy, RawMessage
from momo_relay.infrastructure.webhook_client import WebhookClient
from momo_relay.parsing.patterns import default_registry
from momo_relay.usecases.delivery_ledger import DeliveryLedger
from momo_relay.usecases.ingest_gate import Accepted, IngestGate, Rejected
from momo_relay.usecases.ingest_pipeline import IngestPipeline
from momo_relay.usecases.transaction_store import TransactionStore
from momo_relay.usecases.webhook_router import WebhookRouter
from momo_relay.utils.time import now_ms

MTN_BODY = "You have received GHS 50.00 from 0244123456. Transaction ID: MP123456789"


class TestIngestGate:
    """Tests for IngestGate.accept."""

    @pytest.fixture
    def gate(self):
        return IngestGate(default_registry())

    def test_accepts_provider_money_sms(self, gate):
        decision = gate.accept("MTN MoMo", MTN_BODY, 1700000000000, phone_number="+233200000000")

        assert isinstance(decision, Accepted)
        assert decision.message.sender == "MTN MoMo"
        assert decision.message.body == MTN_BODY
        assert decision.message.received_at_ms == 1700000000000
        assert decision.message.phone_number == "+233200000000"

    def test_sender_match_is_case_insensitive(self, gate):
        assert isinstance(gate.accept("mobilemoney", MTN_BODY, 0), Accepted)

    def test_currency_code_counts_as_keyword(self, gate):
        assert isinstance(gate.accept("M-Money", "5,000 RWF yoherejwe", 0), Accepted)

    def test_accepts_money_sms_from_unlisted_sender(self, gate):
        # Receipts forwarded from a personal number or an unlisted short code
        decision = gate.accept("+233244123456", MTN_BODY, 0)

        assert isinstance(decision, Accepted)
        assert decision.message.sender == "+233244123456"

    def test_accepts_known_sender_without_keywords(self, gate):
        assert isinstance(gate.accept("MTN", "Your data bundle expires tomorrow", 0), Accepted)

    def test_rejects_unknown_sender_without_keywords(self, gate):
        decision = gate.accept("FriendPhone", "See you at the match tomorrow", 0)

        assert isinstance(decision, Rejected)
        assert decision.reason == "unknown sender and no money keywords"

    def test_strict_rejects_unknown_sender(self):
        gate = IngestGate(default_registry(), strict=True)

        decision = gate.accept("FriendPhone", MTN_BODY, 0)

        assert isinstance(decision, Rejected)
        assert decision.reason == "unknown sender"

    def test_strict_rejects_body_without_money_keywords(self):
        gate = IngestGate(default_registry(), strict=True)

        decision = gate.accept("MTN", "Your data bundle expires tomorrow", 0)

        assert isinstance(decision, Rejected)
        assert decision.reason == "no money keywords"

    def test_rejects_empty_body(self, gate):
        assert isinstance(gate.accept("MTN", "   ", 0), Rejected)

    def test_rejection_log_is_truncated(self, gate, caplog):
        body = "hello " * 50

        with caplog.at_level(logging.INFO, logger="momo_relay.usecases.ingest_gate"):
            gate.accept("FriendPhone", body, 0)

        assert body[:40] in caplog.text
        assert body[:41] not in caplog.text

    def test_extra_senders_without_registry(self):
        gate = IngestGate(extra_senders=("MyBank",))

        assert isinstance(gate.accept("MyBank", "Your statement is ready", 0), Accepted)
        assert isinstance(gate.accept("MTN", "Your data bundle expires tomorrow", 0), Rejected)
        assert isinstance(gate.accept("MTN", MTN_BODY, 0), Accepted)


def _message(sender="MTN MoMo", body=MTN_BODY, phone_number="") -> RawMessage:
    return RawMessage(sender=sender, body=body, received_at_ms=1700000000000, phone_number=phone_number)


def _pipeline(chain=None, store=None, sync=None, router=None, queue_size=2, workers=1):
    if store is None:
        store = MagicMock()
        store.append = AsyncMock(return_value=7)
        store.get = AsyncMock(return_value=MagicMock(transaction_reference="MP123456789", idempotency_key="k-7"))
        store.mark_relayed = AsyncMock()
    if router is None:
        router = MagicMock()
        router.dispatch = AsyncMock(return_value=[])
    return IngestPipeline(
        chain or MagicMock(parse=AsyncMock(return_value=MagicMock(parsed_by=ParsedBy.TIER_REGEX))),
        store,
        sync or MagicMock(),
        router,
        queue_size=queue_size,
        workers=workers,
    )


class TestIngestPipeline:
    """Tests for IngestPipeline."""

    def test_submit_refuses_when_queue_is_full(self):
        pipeline = _pipeline(queue_size=2)

        assert pipeline.submit(_message()) is True
        assert pipeline.submit(_message()) is True
        assert pipeline.submit(_message()) is False
        assert pipeline.queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_process_runs_every_stage(self):
        pipeline = _pipeline()

        transaction_id = await pipeline.process(_message(phone_number="+233200000000"))

        assert transaction_id == 7
        pipeline.chain.parse.assert_awaited_once_with("MTN MoMo", MTN_BODY)
        pipeline.store.append.assert_awaited_once()
        pipeline.sync.on_transaction_appended.assert_called_once_with(7)
        pipeline.router.dispatch.assert_awaited_once_with(
            "+233200000000", "MTN MoMo", MTN_BODY, event_ref="MP123456789", timestamp_ms=1700000000000
        )

    @pytest.mark.asyncio
    async def test_event_ref_falls_back_to_idempotency_key(self):
        store = MagicMock()
        store.append = AsyncMock(return_value=3)
        store.get = AsyncMock(return_value=MagicMock(transaction_reference=None, idempotency_key="uuid-3"))
        store.mark_relayed = AsyncMock()
        pipeline = _pipeline(store=store)

        await pipeline.process(_message())

        assert pipeline.router.dispatch.call_args.kwargs["event_ref"] == "uuid-3"

    @pytest.mark.asyncio
    async def test_store_failure_skips_relay(self):
        store = MagicMock()
        store.append = AsyncMock(side_effect=RuntimeError("disk full"))
        pipeline = _pipeline(store=store)

        assert await pipeline.process(_message()) is None
        pipeline.sync.on_transaction_appended.assert_not_called()
        pipeline.router.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sync_failure_does_not_block_relay(self):
        sync = MagicMock()
        sync.on_transaction_appended.side_effect = RuntimeError("scheduler down")
        pipeline = _pipeline(sync=sync)

        assert await pipeline.process(_message()) == 7
        pipeline.router.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_workers_drain_queue(self):
        pipeline = _pipeline(queue_size=10, workers=2)
        await pipeline.start()

        for _ in range(5):
            assert pipeline.submit(_message())
        await asyncio.wait_for(pipeline.queue.join(), timeout=5)
        await pipeline.stop()

        assert pipeline.store.append.await_count == 5
        assert pipeline.running is False

    @pytest.mark.asyncio
    async def test_worker_survives_processing_error(self):
        chain = MagicMock(parse=AsyncMock(side_effect=[RuntimeError("boom"), MagicMock()]))
        pipeline = _pipeline(chain=chain, queue_size=10)
        await pipeline.start()

        pipeline.submit(_message())
        pipeline.submit(_message())
        await asyncio.wait_for(pipeline.queue.join(), timeout=5)
        await pipeline.stop()

        assert chain.parse.await_count == 2
        assert pipeline.store.append.await_count == 1

    @pytest.mark.asyncio
    async def test_process_marks_relayed_once_every_webhook_is_recorded(self):
        pipeline = _pipeline()
        pipeline.router.dispatch.return_value = [
            DeliveryOutcome(webhook_id=1, entry_id=11, status=DeliveryStatus.DELIVERED),
            DeliveryOutcome(webhook_id=2, entry_id=12, status=DeliveryStatus.FAILED, retryable=True),
        ]

        await pipeline.process(_message(phone_number="+233200000000"))

        pipeline.store.append.assert_awaited_once_with(
            pipeline.chain.parse.return_value, "+233200000000", 1700000000000
        )
        pipeline.store.mark_relayed.assert_awaited_once_with(7)

    @pytest.mark.asyncio
    async def test_unrecorded_webhook_leaves_record_unrelayed(self):
        pipeline = _pipeline()
        pipeline.router.dispatch.return_value = [
            DeliveryOutcome(webhook_id=1, entry_id=None, status=DeliveryStatus.FAILED, retryable=True),
        ]

        assert await pipeline.process(_message()) == 7
        pipeline.store.mark_relayed.assert_not_awaited()


class TestRelayRecovery:
    """A record stored before a crash, but never relayed, is relayed on the next start."""

    @pytest.fixture
    def store(self, session_factory):
        return TransactionStore(session_factory)

    @pytest.mark.asyncio
    async def test_resumes_stored_but_unrelayed_record(
        self, store, session_factory, test_settings, make_webhook, scripted_transport, sample_parsed
    ):
        webhook = await make_webhook(phone_match_pattern="*")
        transport = scripted_transport([200])
        ledger = DeliveryLedger(session_factory, WebhookClient(test_settings, transport=transport), test_settings)
        router = WebhookRouter(session_factory, ledger, test_settings)
        pipeline = _pipeline(store=store, router=router)

        # Stored, then the process died before dispatch
        transaction_id = await store.append(sample_parsed, "+233200000000", 1700000000000)

        assert await pipeline.resume_unrelayed(now_ms() + 1) == 1

        assert len(transport.requests) == 1
        body = json.loads(transport.requests[0].content)
        assert body["sender"] == "MTN MoMo"
        assert body["message"] == sample_parsed.raw_message
        assert body["timestamp"] == 1700000000000

        entries = await ledger.list_by_webhook(webhook.id)
        assert [(e.event_ref, e.status) for e in entries] == [("MP123456789", DeliveryStatus.DELIVERED)]
        assert (await store.get(transaction_id)).relayed_at_ms is not None
        assert await pipeline.resume_unrelayed(now_ms() + 1) == 0
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_ignores_records_after_cutoff(self, store, sample_parsed):
        router = MagicMock()
        router.dispatch = AsyncMock(return_value=[])
        pipeline = _pipeline(store=store, router=router)
        cutoff = now_ms() - 60_000
        await store.append(sample_parsed)

        assert await pipeline.resume_unrelayed(cutoff) == 0
        router.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_dispatch_is_retried_next_time(self, store, sample_parsed):
        router = MagicMock()
        router.dispatch = AsyncMock(side_effect=[RuntimeError("database is locked"), []])
        pipeline = _pipeline(store=store, router=router)
        transaction_id = await store.append(sample_parsed, "+233200000000")

        assert await pipeline.resume_unrelayed(now_ms() + 1) == 0
        assert [t.id for t in await store.list_unrelayed(now_ms() + 1)] == [transaction_id]

        assert await pipeline.resume_unrelayed(now_ms() + 1) == 1
        assert await store.list_unrelayed(now_ms() + 1) == []
        # No arrival time was recorded, so the stored time stands in
        assert router.dispatch.await_args.kwargs["timestamp_ms"] == (await store.get(transaction_id)).created_at_ms
