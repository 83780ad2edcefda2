"""
Delivery log model: the audit trail of every webhook delivery attempt.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from pydantic import BaseModel, ConfigDict

from momo_relay.domain.transaction import Base

MAX_MESSAGE_PREVIEW_LENGTH = 160
MAX_RESPONSE_BODY_LENGTH = 1000
MAX_ERROR_LENGTH = 500


class DeliveryStatus(str, Enum):
    """Delivery log status enumeration."""
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class DeliveryLog(Base):
    """SQLAlchemy model for one logical delivery of an event to a webhook."""

    __tablename__ = "delivery_logs"
    __table_args__ = (
        UniqueConstraint("webhook_id", "event_ref", name="uq_delivery_logs_webhook_event"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    webhook_id = Column(Integer, ForeignKey("webhook_configs.id"), nullable=False, index=True)
    event_ref = Column(String(128), nullable=False)
    phone_number = Column(String(64), nullable=False, default="")
    sender = Column(String(128), nullable=False, default="")
    message = Column(String(MAX_MESSAGE_PREVIEW_LENGTH), nullable=False, default="")
    payload = Column(Text, nullable=False)
    status = Column(SQLEnum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    retryable = Column(Boolean, nullable=False, default=True)
    response_code = Column(Integer, nullable=True)
    response_body = Column(String(MAX_RESPONSE_BODY_LENGTH), nullable=True)
    last_error = Column(String(MAX_ERROR_LENGTH), nullable=True)
    created_at_ms = Column(BigInteger, nullable=False)
    updated_at_ms = Column(BigInteger, nullable=False)
    delivered_at_ms = Column(BigInteger, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<DeliveryLog(id={self.id}, webhook_id={self.webhook_id}, "
            f"status={self.status}, retry_count={self.retry_count})>"
        )


@dataclass(frozen=True)
class DeliveryEvent:
    """The event relayed to webhooks: one accepted SMS."""
    event_ref: str
    phone_number: str
    sender: str
    message: str
    timestamp_ms: int


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of a single delivery attempt (or of skipping one)."""
    webhook_id: int
    entry_id: Optional[int]
    status: DeliveryStatus
    retry_count: int = 0
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    retryable: bool = False
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


# Pydantic Schemas

class DeliveryLogResponse(BaseModel):
    """Schema for delivery log responses."""
    id: int
    webhook_id: int
    event_ref: str
    phone_number: str
    sender: str
    message: str
    status: DeliveryStatus
    retry_count: int
    retryable: bool
    response_code: Optional[int]
    response_body: Optional[str]
    last_error: Optional[str]
    created_at_ms: int
    updated_at_ms: int
    delivered_at_ms: Optional[int]

    model_config = ConfigDict(from_attributes=True)


class DeliveryOutcomeResponse(BaseModel):
    """Schema for a delivery attempt result."""
    webhook_id: int
    entry_id: Optional[int]
    status: DeliveryStatus
    retry_count: int
    response_code: Optional[int]
    retryable: bool
    error: Optional[str]
