"""
Escrow Settlement - Domain Model and Database Schema
====================================================

Two records drive the whole system:
- Payment: money collected from a payer through the card processor
- EscrowTransaction: the hold on that money until it is released to the payee

Dataclasses are the in-process representation used by the services and the
in-memory store. The ORM rows mirror them for the SQL-backed store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Index, JSON, Numeric, String, Text
from sqlalchemy.types import TypeDecorator
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PaymentStatus(Enum):
    """Payment lifecycle states"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUNDED = "refunded"


class EscrowStatus(Enum):
    """Escrow hold lifecycle states"""
    HELD = "held"
    PENDING_RATING = "pending_rating"
    APPROVED = "approved"
    RELEASED = "released"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    REFUNDED = "refunded"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ============================================================================
# DOMAIN RECORDS
# ============================================================================

@dataclass
class Payment:
    """A charge collected from a payer and held for a payee"""
    id: str
    payer_id: str
    payee_id: str
    amount: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    net_amount: Decimal
    currency: str = "EUR"
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    confirmed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    provider_reference: Optional[str] = None
    client_secret: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_refundable(self) -> bool:
        return self.status == PaymentStatus.CONFIRMED


@dataclass
class EscrowTransaction:
    """The hold on a confirmed payment, released or refunded exactly once"""
    id: str
    payment_id: str
    payer_id: str
    payee_id: str
    amount: Decimal
    held_at: datetime
    release_eligible_at: datetime
    status: EscrowStatus = EscrowStatus.HELD
    released_at: Optional[datetime] = None
    release_reason: Optional[str] = None
    rating_received: bool = False
    rating_approved: bool = False
    min_rating_required: float = 3.0
    actual_rating: Optional[float] = None
    reviewed_by: Optional[str] = None
    dispute_reason: Optional[str] = None
    disputed_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    dispute_resolution: Optional[str] = None

    def __post_init__(self):
        if self.release_eligible_at <= self.held_at:
            raise ValueError(
                f"Escrow {self.id}: release_eligible_at must be after held_at"
            )
        if self.rating_approved and not self.rating_received:
            raise ValueError(f"Escrow {self.id}: rating_approved requires rating_received")

    @property
    def is_settled(self) -> bool:
        return self.status in (EscrowStatus.RELEASED, EscrowStatus.RESOLVED, EscrowStatus.REFUNDED)


# ============================================================================
# DATABASE ROWS
# ============================================================================

class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back as UTC (SQLite drops tzinfo)"""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return ensure_utc(value)

    def process_result_value(self, value, dialect):
        return ensure_utc(value)


class PaymentRecord(Base):
    """Payments collected through the card processor"""
    __tablename__ = 'escrow_payments'

    id = Column(String(64), primary_key=True)
    payer_id = Column(String(64), nullable=False, index=True)
    payee_id = Column(String(64), nullable=False, index=True)

    # Financial details
    amount = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    processing_fee = Column(Numeric(12, 2), nullable=False)
    net_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), default="EUR", nullable=False)

    # Status and lifecycle
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    created_at = Column(UTCDateTime, default=utc_now, nullable=False)
    confirmed_at = Column(UTCDateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)

    # Processor references
    provider_reference = Column(String(128), nullable=True, index=True)
    client_secret = Column(String(255), nullable=True)

    # Refund details
    refunded_at = Column(UTCDateTime, nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refund_reason = Column(Text, nullable=True)

    extra_metadata = Column('metadata', JSON, nullable=True)


class EscrowRecord(Base):
    """Escrow holds awaiting release, refund or dispute resolution"""
    __tablename__ = 'escrow_transactions'

    id = Column(String(64), primary_key=True)
    payment_id = Column(String(64), nullable=False, unique=True)
    payer_id = Column(String(64), nullable=False, index=True)
    payee_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)

    status = Column(String(20), default=EscrowStatus.HELD.value, nullable=False)
    held_at = Column(UTCDateTime, nullable=False)
    release_eligible_at = Column(UTCDateTime, nullable=False)
    released_at = Column(UTCDateTime, nullable=True)
    release_reason = Column(String(64), nullable=True)

    # Rating gate
    rating_received = Column(Boolean, default=False, nullable=False)
    rating_approved = Column(Boolean, default=False, nullable=False)
    min_rating_required = Column(Float, default=3.0, nullable=False)
    actual_rating = Column(Float, nullable=True)
    reviewed_by = Column(String(64), nullable=True)

    # Dispute tracking
    dispute_reason = Column(Text, nullable=True)
    disputed_at = Column(UTCDateTime, nullable=True)
    escalated_at = Column(UTCDateTime, nullable=True)
    dispute_resolution = Column(String(20), nullable=True)

    __table_args__ = (
        Index('ix_escrow_transactions_status_eligible', 'status', 'release_eligible_at'),
    )
