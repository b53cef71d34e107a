"""
SQLAlchemy Models for deposit settlement

- PaymentIntent: requested deposit awaiting on-chain confirmation
- WalletBalance: per-user, per-asset balance (only mutated by WalletLedger)
- WalletTransaction: append-only journal of balance credits
"""

import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

from luna_deposits.chains.assets import Asset, format_amount


def utcnow():
    """Helper for timezone-aware UTC datetime (replaces deprecated utcnow)"""
    return datetime.now(timezone.utc)


def new_intent_id() -> str:
    return str(uuid.uuid4())


Base = declarative_base()


class ExactNumeric(TypeDecorator):
    """
    Fixed-point number that never passes through a float

    PostgreSQL: NUMERIC(precision, scale).
    SQLite: decimal text, since SQLite has no exact decimal type and turns
    integers beyond 64 bits into floats (10 ETH in wei already overflows).
    """

    impl = Numeric
    cache_ok = True

    def __init__(self, precision: int = 78, scale: int = 0):
        super().__init__(precision=precision, scale=scale)
        self.precision = precision
        self.scale = scale

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(self.precision + 2))
        return dialect.type_descriptor(Numeric(self.precision, self.scale))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(value)
        if dialect.name == "sqlite":
            return str(value)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class MinorUnits(ExactNumeric):
    """Integer amount in an asset's smallest unit, up to uint256; int on the Python side"""

    cache_ok = True

    def __init__(self):
        super().__init__(precision=78, scale=0)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return super().process_bind_param(int(value), dialect)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class IntentStatus(str, enum.Enum):
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not IntentStatus.PENDING


ASSET_VALUES = ", ".join(f"'{a.value}'" for a in Asset)


class PaymentIntent(Base):
    """
    Requested deposit

    Lifecycle: pending -> settled | failed. Terminal states are final;
    transitions are compare-and-swap updates in PaymentIntentStore.
    """
    __tablename__ = "payment_intents"

    id = Column(String(36), primary_key=True, default=new_intent_id)
    user_id = Column(Integer, nullable=False, index=True)
    asset = Column(String(20), nullable=False)
    amount_minor = Column(MinorUnits, nullable=False)
    destination_address = Column(String(128), nullable=False)
    memo = Column(String(64), nullable=True)

    status = Column(String(10), default=IntentStatus.PENDING.value, nullable=False, index=True)

    # Set once; a reference may belong to a single intent (replay protection)
    transaction_reference = Column(String(128), nullable=True, unique=True)
    reference_attached_at = Column(DateTime, nullable=True)
    # Poller rotation: least recently checked first
    last_checked_at = Column(DateTime, nullable=True)
    received_amount_minor = Column(MinorUnits, nullable=True)
    failure_reason = Column(Text, nullable=True)

    # Quote snapshot (informational)
    fiat_currency = Column(String(8), nullable=True)
    fiat_rate = Column(ExactNumeric(24, 8), nullable=True)
    fiat_equivalent = Column(ExactNumeric(24, 2), nullable=True)

    idempotency_key = Column(String(64), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    settled_at = Column(DateTime, nullable=True)

    wallet_transactions = relationship("WalletTransaction", back_populates="intent")

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'settled', 'failed')", name='intent_valid_status'),
        CheckConstraint(f"asset IN ({ASSET_VALUES})", name='intent_valid_asset'),
        UniqueConstraint('user_id', 'idempotency_key', name='uq_intent_user_idempotency_key'),
        Index('idx_intent_status_created', 'status', 'created_at'),
        Index('idx_intent_user_created', 'user_id', 'created_at'),
        Index('idx_intent_status_checked', 'status', 'last_checked_at'),
    )

    def __repr__(self):
        return f"<PaymentIntent(id={self.id}, user_id={self.user_id}, asset={self.asset}, status={self.status})>"

    @property
    def asset_enum(self) -> Asset:
        return Asset(self.asset)

    @property
    def status_enum(self) -> IntentStatus:
        return IntentStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.status_enum.is_terminal

    @property
    def amount_display(self) -> str:
        """Requested amount at full asset precision, e.g. "50.000000" """
        return format_amount(self.amount_minor, self.asset_enum)


class WalletBalance(Base):
    """
    Wallet balance for one user and one asset

    Created lazily on the first credit, never deleted.
    """
    __tablename__ = "wallet_balances"

    user_id = Column(Integer, primary_key=True)
    asset = Column(String(20), primary_key=True)
    balance_minor = Column(MinorUnits, nullable=False, default=0)
    total_deposited_minor = Column(MinorUnits, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(f"asset IN ({ASSET_VALUES})", name='balance_valid_asset'),
    )

    def __repr__(self):
        return f"<WalletBalance(user_id={self.user_id}, asset={self.asset}, balance={self.balance_display})>"

    @property
    def balance_display(self) -> str:
        return format_amount(self.balance_minor or 0, Asset(self.asset))

    @property
    def total_deposited_display(self) -> str:
        return format_amount(self.total_deposited_minor or 0, Asset(self.asset))


class WalletTransaction(Base):
    """
    Journal entry for a balance mutation

    (intent_id, type) is unique: the database rejects a second deposit
    credit for the same intent even if application checks are bypassed.
    """
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    asset = Column(String(20), nullable=False)
    amount_minor = Column(MinorUnits, nullable=False)
    type = Column(String(20), nullable=False, default='deposit')
    intent_id = Column(String(36), ForeignKey("payment_intents.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    intent = relationship("PaymentIntent", back_populates="wallet_transactions")

    __table_args__ = (
        CheckConstraint("type IN ('deposit')", name='wallet_tx_valid_type'),
        UniqueConstraint('intent_id', 'type', name='uq_wallet_tx_intent_type'),
        Index('idx_wallet_tx_user_asset', 'user_id', 'asset'),
    )

    def __repr__(self):
        return f"<WalletTransaction(id={self.id}, user_id={self.user_id}, type={self.type}, amount={self.amount_display})>"

    @property
    def amount_display(self) -> str:
        return format_amount(self.amount_minor, Asset(self.asset))
