"""
Pytest configuration and fixtures for MoMo Relay tests.
"""

from typing import AsyncGenerator, List, Sequence, Union
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from momo_relay.config.settings import Settings
from momo_relay.domain.transaction import Base, ParsedBy, ParsedTransaction, Direction, ProviderId
from momo_relay.domain.webhook import WebhookConfig
from momo_relay.domain.delivery_log import DeliveryLog  # noqa: F401 - needed for table creation
from momo_relay.utils.time import now_ms


# Use a separate in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

MTN_SENDER = "MTN MoMo"
MTN_RECEIVED_SMS = "You have received GHS 50.00 from 0244123456. Transaction ID: MP123456789"


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    """Session factory bound to the test engine."""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment, with instant retries."""
    return Settings(
        _env_file=None,
        openai_api_key="",
        anthropic_api_key="",
        default_country_code="GH",
        default_currency="GHS",
        device_id="test-device",
        sync_endpoint_url="https://backend.test/sync",
        sync_api_key="sync-key",
        sync_debounce_seconds=5,
        sync_backoff_initial_seconds=30,
        sync_backoff_max_seconds=3600,
        sync_max_attempts=20,
        sync_batch_size=50,
        webhook_max_attempts=4,
        webhook_backoff_seconds=0,
        webhook_sweep_max_attempts=10,
        ingest_api_key="",
        ingest_queue_size=4,
        ingest_workers=1,
    )


@pytest.fixture
def mock_scheduler():
    """Mock APScheduler instance with no scheduled jobs."""
    scheduler = MagicMock()
    scheduler.get_job.return_value = None
    return scheduler


@pytest.fixture
def sample_parsed() -> ParsedTransaction:
    """A regex-parsed MTN Ghana receipt."""
    return ParsedTransaction(
        amount_minor_units=5000,
        currency_code="GHS",
        direction=Direction.RECEIVED,
        counterparty_phone="0244123456",
        provider_id=ProviderId.MTN,
        transaction_reference="MP123456789",
        sender=MTN_SENDER,
        raw_message=MTN_RECEIVED_SMS,
        parsed_by=ParsedBy.TIER_REGEX,
        confidence=0.70,
    )


@pytest.fixture
def make_webhook(session_factory):
    """Factory that stores a webhook config and returns it."""
    counter = {"n": 0}

    async def _make(**overrides) -> WebhookConfig:
        counter["n"] += 1
        timestamp = now_ms()
        fields = dict(
            name=f"hook-{counter['n']}",
            url=f"https://hooks.test/{counter['n']}",
            phone_match_pattern="*",
            api_key="hook-api-key",
            hmac_secret="s3cret-signing-key",
            is_active=True,
            allow_insecure_transport=False,
            created_at_ms=timestamp,
            updated_at_ms=timestamp,
        )
        fields.update(overrides)
        webhook = WebhookConfig(**fields)
        async with session_factory() as session:
            session.add(webhook)
            await session.commit()
            await session.refresh(webhook)
        return webhook

    return _make


class ScriptedTransport(httpx.MockTransport):
    """MockTransport that answers with a scripted sequence and records requests."""

    def __init__(self, responses: Sequence[Union[int, Exception]]):
        self.responses: List[Union[int, Exception]] = list(responses)
        self.requests: List[httpx.Request] = []
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        # The last scripted response repeats once the script runs out
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return httpx.Response(response, text=f"status {response}")


@pytest.fixture
def scripted_transport():
    """Factory for ScriptedTransport instances."""
    return ScriptedTransport
