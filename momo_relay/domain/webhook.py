"""
Webhook configuration model and schemas.
"""

import ipaddress
import secrets
from typing import Optional
from urllib.parse import urlsplit

from sqlalchemy import BigInteger, Boolean, Column, Integer, String
from pydantic import BaseModel, ConfigDict, Field, field_validator

from momo_relay.domain.transaction import Base

WILDCARD_PATTERNS = ("", "*")
LOOPBACK_HOSTS = ("localhost",)


class InsecureWebhookUrl(ValueError):
    """Raised when a webhook URL uses plain HTTP towards a non-loopback host."""


class WebhookConfig(Base):
    """SQLAlchemy model for operator-managed webhook endpoints."""

    __tablename__ = "webhook_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    url = Column(String(2048), nullable=False, index=True)  # Unique among live webhooks
    phone_match_pattern = Column(String(64), nullable=False, default="")
    api_key = Column(String(255), nullable=False, default="")
    hmac_secret = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    allow_insecure_transport = Column(Boolean, nullable=False, default=False)
    created_at_ms = Column(BigInteger, nullable=False)
    updated_at_ms = Column(BigInteger, nullable=False)
    deleted_at_ms = Column(BigInteger, nullable=True)  # Soft delete keeps the delivery log

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at_ms is not None

    @property
    def is_wildcard(self) -> bool:
        return (self.phone_match_pattern or "").strip() in WILDCARD_PATTERNS

    def matches(self, phone_number: str) -> bool:
        """Wildcard patterns match every number, including the unknown (empty) one."""
        if self.is_wildcard:
            return True
        return self.phone_match_pattern.strip() == (phone_number or "").strip()

    def __repr__(self) -> str:
        return f"<WebhookConfig(id={self.id}, name={self.name}, active={self.is_active})>"


def is_loopback_host(host: Optional[str]) -> bool:
    if not host:
        return False
    if host.lower() in LOOPBACK_HOSTS:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def validate_webhook_url(url: str, allow_insecure: bool = False) -> str:
    """
    Validate a webhook URL.

    Args:
        url: Target URL
        allow_insecure: Operator override permitting plain HTTP to remote hosts

    Returns:
        The stripped URL

    Raises:
        InsecureWebhookUrl: If plain HTTP is used towards a non-loopback host
        ValueError: If the URL is not an absolute http(s) URL
    """
    url = url.strip()
    parts = urlsplit(url)

    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ValueError(f"Webhook URL must be an absolute http(s) URL: {url!r}")

    if parts.scheme == "http" and not allow_insecure and not is_loopback_host(parts.hostname):
        raise InsecureWebhookUrl(
            f"Webhook URL {url!r} uses plain HTTP; use https or enable allow_insecure_transport"
        )

    return url


def generate_hmac_secret() -> str:
    return secrets.token_hex(32)


# Pydantic Schemas

class WebhookCreate(BaseModel):
    """Schema for creating a webhook."""
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=2048)
    phone_match_pattern: str = Field("", max_length=64)
    api_key: str = Field("", max_length=255)
    hmac_secret: Optional[str] = Field(None, min_length=8, max_length=255)
    is_active: bool = True
    allow_insecure_transport: bool = False

    @field_validator("phone_match_pattern")
    @classmethod
    def _strip_pattern(cls, value: str) -> str:
        return value.strip()


class WebhookUpdate(BaseModel):
    """Schema for updating a webhook."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    url: Optional[str] = Field(None, min_length=1, max_length=2048)
    phone_match_pattern: Optional[str] = Field(None, max_length=64)
    api_key: Optional[str] = Field(None, max_length=255)
    hmac_secret: Optional[str] = Field(None, min_length=8, max_length=255)
    is_active: Optional[bool] = None
    allow_insecure_transport: Optional[bool] = None


class WebhookResponse(BaseModel):
    """Schema for webhook responses. Secrets are never echoed back."""
    id: int
    name: str
    url: str
    phone_match_pattern: str
    is_active: bool
    allow_insecure_transport: bool
    created_at_ms: int
    updated_at_ms: int

    model_config = ConfigDict(from_attributes=True)


class WebhookCreatedResponse(WebhookResponse):
    """Returned once on creation so the operator can copy the signing secret."""
    hmac_secret: str
