"""
Service wiring. One set of long-lived services per process.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache

from momo_relay.config.settings import Settings, get_settings
from momo_relay.infrastructure.backend_client import BackendClient
from momo_relay.infrastructure.webhook_client import WebhookClient
from momo_relay.parsing.chain import ParserChain, build_parser_chain
from momo_relay.parsing.patterns import default_registry
from momo_relay.usecases.delivery_ledger import DeliveryLedger
from momo_relay.usecases.ingest_gate import IngestGate
from momo_relay.usecases.ingest_pipeline import IngestPipeline
from momo_relay.usecases.sync_coordinator import SyncCoordinator
from momo_relay.usecases.transaction_store import TransactionStore
from momo_relay.usecases.webhook_router import WebhookRouter

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    gate: IngestGate
    chain: ParserChain
    store: TransactionStore
    sync: SyncCoordinator
    ledger: DeliveryLedger
    router: WebhookRouter
    pipeline: IngestPipeline


@lru_cache()
def get_services() -> Services:
    """Build the process-wide services on first use."""
    from momo_relay.infrastructure.database import async_session_factory
    from momo_relay.infrastructure.scheduler import get_scheduler

    settings = get_settings()
    store = TransactionStore(async_session_factory)
    ledger = DeliveryLedger(async_session_factory, WebhookClient(settings), settings)
    router = WebhookRouter(async_session_factory, ledger, settings)
    sync = SyncCoordinator(get_scheduler(), store, BackendClient(settings), settings)
    chain = build_parser_chain(settings)

    logger.info(
        "Parser tiers: " + ", ".join(f"{t.name}={'on' if t.enabled else 'off'}" for t in chain.tiers)
    )

    return Services(
        settings=settings,
        gate=IngestGate(default_registry(), strict=settings.ingest_strict_gate),
        chain=chain,
        store=store,
        sync=sync,
        ledger=ledger,
        router=router,
        pipeline=IngestPipeline(
            chain,
            store,
            sync,
            router,
            queue_size=settings.ingest_queue_size,
            workers=settings.ingest_workers,
        ),
    )
