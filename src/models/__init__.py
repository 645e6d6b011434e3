"""Database models."""

from src.models.payment import (
    CoinTransaction,
    OrderStatus,
    PaymentOrder,
    ProviderName,
    TransactionType,
    UserCoinBalance,
)

__all__ = [
    "PaymentOrder",
    "UserCoinBalance",
    "CoinTransaction",
    "OrderStatus",
    "ProviderName",
    "TransactionType",
]
