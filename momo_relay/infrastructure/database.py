"""
Database setup and session management.

One SQLite file holds the transaction ledger, webhook configs and the delivery
log. Stores open a short session per operation from async_session_factory.
"""

import logging
from pathlib import Path

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from momo_relay.config.settings import get_settings
from momo_relay.domain.transaction import Base
from momo_relay.domain.webhook import WebhookConfig  # noqa: F401 - needed for table creation
from momo_relay.domain.delivery_log import DeliveryLog  # noqa: F401 - needed for table creation

logger = logging.getLogger(__name__)
settings = get_settings()

# Single shared connection; SQLite serialises writers anyway
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def ensure_data_dir() -> Path:
    """Create the data directory for the database and job store files."""
    path = Path(settings.data_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


async def init_database() -> None:
    """Create the data directory and all tables."""
    data_dir = ensure_data_dir()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database ready in {data_dir.resolve()}")


async def close_database() -> None:
    await engine.dispose()


async def get_session() -> AsyncSession:
    """FastAPI dependency: one session per request."""
    async with async_session_factory() as session:
        yield session
