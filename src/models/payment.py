"""Payment ledger ORM models.

`payment_order` is the audit trail of every checkout, `user_coin_balance`
holds the running coin balance per user and `coin_transaction` is the
append-only ledger the balance is derived from.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from src.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class OrderStatus(str, Enum):
    """Payment order lifecycle states."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ProviderName(str, Enum):
    """Supported payment providers."""

    STRIPE = "stripe"
    PAYPAL = "paypal"


class TransactionType(str, Enum):
    """Coin ledger entry kinds. Only purchases are written today."""

    PURCHASE = "purchase"
    SPEND = "spend"
    REFUND = "refund"


class PaymentOrder(Base):
    __tablename__ = "payment_order"
    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_payment_order_provider_event"),
        CheckConstraint("amount_cents >= 0", name="ck_payment_order_amount"),
        CheckConstraint("coins >= 0", name="ck_payment_order_coins"),
        CheckConstraint("status IN ('pending', 'completed', 'failed')", name="ck_payment_order_status"),
        CheckConstraint(
            "(status = 'completed' AND provider_event_id IS NOT NULL AND completed_at IS NOT NULL)"
            " OR (status <> 'completed' AND provider_event_id IS NULL AND completed_at IS NULL)",
            name="ck_payment_order_completion",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    tier_key = Column(String(64), nullable=False)
    provider = Column(String(16), nullable=False)
    provider_order_id = Column(String(128), nullable=True, index=True)  # Checkout Session / PayPal order
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    coins = Column(Integer, nullable=False)  # base + bonus
    status = Column(String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)
    provider_event_id = Column(String(128), nullable=True)
    failure_reason = Column(String(255), nullable=True)
    order_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_completed(self) -> bool:
        return self.status == OrderStatus.COMPLETED.value

    def __repr__(self) -> str:
        return f"<PaymentOrder {self.id} {self.provider} {self.status}>"


class UserCoinBalance(Base):
    __tablename__ = "user_coin_balance"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_user_coin_balance_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, unique=True)
    balance = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    total_spent = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class CoinTransaction(Base):
    __tablename__ = "coin_transaction"
    __table_args__ = (
        # At most one purchase credit per order
        UniqueConstraint("order_id", "transaction_type", name="uq_coin_transaction_order_type"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(36), nullable=False, index=True)
    coins = Column(Integer, nullable=False)  # signed delta
    transaction_type = Column(String(16), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
