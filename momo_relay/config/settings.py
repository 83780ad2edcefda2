"""
Application settings and configuration.
All secrets are loaded from environment variables.
"""

import platform
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # AI parsing tiers (primary: OpenAI, secondary: Anthropic)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    ai_parsing_enabled: bool = True
    ai_timeout_seconds: float = 20.0

    # Regex parsing defaults
    default_country_code: str = "GH"
    default_currency: str = "GHS"

    # Database - Use DATA_DIR for persistent volumes
    data_dir: str = "."

    @property
    def database_url(self) -> str:
        """Database URL for the transaction, webhook and delivery tables."""
        return f"sqlite+aiosqlite:///{self.data_dir}/momo_relay.db"

    @property
    def jobs_database_url(self) -> str:
        """Synchronous URL used by the APScheduler job store."""
        return f"sqlite:///{self.data_dir}/jobs.db"

    @property
    def openai_enabled(self) -> bool:
        return self.ai_parsing_enabled and bool(self.openai_api_key.strip())

    @property
    def anthropic_enabled(self) -> bool:
        return bool(self.anthropic_api_key.strip())

    # Inbound SMS endpoint
    ingest_api_key: str = ""  # Empty disables the X-Api-Key check
    ingest_queue_size: int = 256
    ingest_workers: int = 4
    ingest_strict_gate: bool = False  # Require a known sender AND a money keyword

    # Backend sync
    sync_endpoint_url: Optional[str] = None
    sync_api_key: str = ""
    sync_timeout_seconds: float = 30.0
    sync_debounce_seconds: float = 5.0
    sync_backoff_initial_seconds: float = 30.0
    sync_backoff_max_seconds: float = 3600.0
    sync_max_attempts: int = 20
    sync_batch_size: int = 50
    sync_sweep_minutes: int = 15

    # Webhook delivery
    device_id: str = Field(default_factory=lambda: platform.node() or "unknown_device")
    webhook_timeout_seconds: float = 30.0
    webhook_max_attempts: int = 4
    webhook_backoff_seconds: float = 2.0
    webhook_sweep_max_attempts: int = 10
    webhook_sweep_minutes: int = 15
    allow_insecure_webhooks: bool = False

    # Application Settings
    debug: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
