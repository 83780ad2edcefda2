"""
Transaction domain model and schemas.
"""

from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Column, Enum as SQLEnum, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Base = declarative_base()


class Direction(str, Enum):
    """Money movement described by an SMS."""
    RECEIVED = "RECEIVED"
    SENT = "SENT"
    PAYMENT = "PAYMENT"
    WITHDRAWAL = "WITHDRAWAL"
    DEPOSIT = "DEPOSIT"
    AIRTIME = "AIRTIME"
    CASH_OUT = "CASH_OUT"
    UNKNOWN = "UNKNOWN"


class ProviderId(str, Enum):
    """Mobile money providers recognised by the parsers."""
    MTN = "MTN"
    VODAFONE = "VODAFONE"
    AIRTELTIGO = "AIRTELTIGO"
    AIRTEL = "AIRTEL"
    TIGO = "TIGO"
    VODACOM = "VODACOM"
    HALOTEL = "HALOTEL"
    LUMICASH = "LUMICASH"
    ECOCASH = "ECOCASH"
    ORANGE = "ORANGE"
    MPESA = "MPESA"
    UNKNOWN = "UNKNOWN"


class ParsedBy(str, Enum):
    """Which parsing tier produced a transaction."""
    TIER_PRIMARY_AI = "TIER_PRIMARY_AI"
    TIER_SECONDARY_AI = "TIER_SECONDARY_AI"
    TIER_REGEX = "TIER_REGEX"
    TIER_NONE = "TIER_NONE"


class SyncState(str, Enum):
    """Backend upload state of a stored transaction."""
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class Transaction(Base):
    """SQLAlchemy model for the append-only transaction ledger."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(36), nullable=False, unique=True)

    # Immutable after insert
    amount_minor_units = Column(BigInteger, nullable=False, default=0)
    currency_code = Column(String(3), nullable=False)
    direction = Column(SQLEnum(Direction), nullable=False, default=Direction.UNKNOWN)
    counterparty_phone = Column(String(64), nullable=True)
    provider_id = Column(SQLEnum(ProviderId), nullable=False, default=ProviderId.UNKNOWN)
    transaction_reference = Column(String(128), nullable=True)
    balance_minor_units = Column(BigInteger, nullable=True)
    sender = Column(String(128), nullable=False, default="")
    raw_message = Column(Text, nullable=False)
    parsed_by = Column(SQLEnum(ParsedBy), nullable=False)
    confidence = Column(Float, nullable=False, default=0.0)
    occurred_at_ms = Column(BigInteger, nullable=True)
    created_at_ms = Column(BigInteger, nullable=False)

    # Where and when the SMS arrived, kept so an interrupted relay can be redone
    device_phone = Column(String(64), nullable=False, default="")
    received_at_ms = Column(BigInteger, nullable=True)

    # Relay bookkeeping: set once every matching webhook has a ledger entry
    relayed_at_ms = Column(BigInteger, nullable=True, index=True)

    # Sync bookkeeping
    sync_state = Column(SQLEnum(SyncState), nullable=False, default=SyncState.PENDING, index=True)
    remote_id = Column(String(128), nullable=True)
    sync_attempts = Column(Integer, nullable=False, default=0)
    last_sync_error = Column(String(500), nullable=True)
    last_sync_attempt_ms = Column(BigInteger, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, amount={self.amount_minor_units} {self.currency_code}, "
            f"parsed_by={self.parsed_by}, sync_state={self.sync_state})>"
        )


# Pydantic Schemas

class RawMessage(BaseModel):
    """An inbound SMS as handed over by the forwarder. Never persisted."""
    sender: str
    body: str
    received_at_ms: int
    phone_number: str = ""  # Device number the SMS arrived on, usually unknown


class ParsedTransaction(BaseModel):
    """Structured result of the parser chain."""
    amount_minor_units: int = Field(0, ge=0)
    currency_code: str
    direction: Direction = Direction.UNKNOWN
    counterparty_phone: Optional[str] = None
    provider_id: ProviderId = ProviderId.UNKNOWN
    transaction_reference: Optional[str] = None
    balance_minor_units: Optional[int] = None
    sender: str = ""
    raw_message: str
    parsed_by: ParsedBy = ParsedBy.TIER_NONE
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    occurred_at_ms: Optional[int] = None
    sync_state: SyncState = SyncState.PENDING

    @field_validator("currency_code")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _check_unparsed_record(self) -> "ParsedTransaction":
        # A TIER_NONE record must never look like a real parse
        if self.parsed_by == ParsedBy.TIER_NONE:
            if self.confidence != 0.0 or self.direction != Direction.UNKNOWN:
                raise ValueError("TIER_NONE transactions must have confidence 0.0 and direction UNKNOWN")
        return self


class TransactionResponse(BaseModel):
    """Schema for transaction responses."""
    id: int
    idempotency_key: str
    amount_minor_units: int
    currency_code: str
    direction: Direction
    counterparty_phone: Optional[str]
    provider_id: ProviderId
    transaction_reference: Optional[str]
    balance_minor_units: Optional[int]
    sender: str
    raw_message: str
    parsed_by: ParsedBy
    confidence: float
    occurred_at_ms: Optional[int]
    created_at_ms: int
    sync_state: SyncState
    remote_id: Optional[str]
    sync_attempts: int
    last_sync_error: Optional[str]
    relayed_at_ms: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)
