"""Payment Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, model_validator
from pydantic.alias_generators import to_camel

OrderStatusLiteral = Literal["pending", "completed", "failed"]
ProviderLiteral = Literal["stripe", "paypal"]


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, accepting either case on input."""

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class PaymentTier(CamelModel):
    """A whitelisted coin package.

    Prices are integer minor currency units; fractional values are rejected
    so a catalog that stores dollars cannot be ingested by mistake.
    """

    key: str = Field(min_length=1, description="Tier key")
    name: str = Field(description="Display name")
    coins: StrictInt = Field(ge=0, description="Base coins")
    bonus_coins: StrictInt = Field(default=0, ge=0, description="Bonus coins")
    price_cents: StrictInt = Field(ge=0, description="Price in minor currency units")
    currency: str = Field(default="USD", min_length=3, max_length=3, description="ISO currency code")
    is_first_time: bool = Field(default=False, description="Only purchasable as a user's first order")
    description: str | None = Field(default=None, description="Marketing description")

    @property
    def total_coins(self) -> int:
        """Coins credited on purchase (base + bonus)."""
        return self.coins + self.bonus_coins


class TierListResponse(CamelModel):
    """Schema for tier list API responses."""

    items: list[PaymentTier] = Field(description="Available tiers")


class CheckoutRequest(CamelModel):
    """Schema for POST /payment/checkout/{provider}."""

    tier_key: str = Field(min_length=1, max_length=64, description="Whitelisted tier key")
    user_id: str = Field(min_length=1, max_length=64, description="Purchasing user ID")


class CheckoutResponse(CamelModel):
    """Schema for checkout creation response."""

    checkout_url: str = Field(description="Provider-hosted checkout URL to redirect to")
    order_id: str = Field(description="Created payment order ID")
    provider_order_id: str = Field(description="Provider checkout session / order ID")


class OrderResponse(CamelModel):
    """Schema for payment order API responses."""

    id: str = Field(description="Order unique identifier")
    user_id: str = Field(description="Owning user ID")
    tier_key: str = Field(description="Purchased tier key")
    provider: ProviderLiteral = Field(description="Payment provider")
    provider_order_id: str | None = Field(default=None, description="Provider checkout session / order ID")
    amount_cents: int = Field(description="Charged amount in minor units")
    currency: str = Field(description="Currency code")
    coins: int = Field(description="Coins credited on completion")
    status: OrderStatusLiteral = Field(description="Order status")
    failure_reason: str | None = Field(default=None, description="Why the order failed")
    created_at: datetime = Field(description="Creation timestamp")
    completed_at: datetime | None = Field(default=None, description="Completion timestamp")


class VerifyPaymentRequest(CamelModel):
    """Schema for POST /payment/verify/{provider}.

    Stripe callers send the Checkout Session ID, PayPal callers the PayPal
    order ID. Exactly one must be present.
    """

    session_id: str | None = Field(default=None, min_length=1, description="Stripe Checkout Session ID")
    order_id: str | None = Field(default=None, min_length=1, description="PayPal order ID")

    @model_validator(mode="after")
    def check_exactly_one_reference(self) -> "VerifyPaymentRequest":
        if (self.session_id is None) == (self.order_id is None):
            raise ValueError("Provide exactly one of sessionId or orderId")
        return self

    @property
    def reference(self) -> str:
        return self.session_id or self.order_id or ""


class CapturePaymentRequest(CamelModel):
    """Schema for POST /payment/capture/paypal."""

    order_id: str = Field(min_length=1, description="PayPal order ID approved by the buyer")


class VerifyPaymentResponse(CamelModel):
    """Schema for verification / capture responses."""

    paid: bool = Field(description="Whether the provider reports the payment as settled")
    already_processed: bool = Field(description="Whether coins had already been credited before this call")
    order: OrderResponse = Field(description="Current order state")


class CoinBalanceResponse(CamelModel):
    """Schema for a user's coin balance."""

    user_id: str = Field(description="User ID")
    balance: int = Field(default=0, description="Spendable coins")
    total_earned: int = Field(default=0, description="Coins ever credited")
    total_spent: int = Field(default=0, description="Coins ever spent")


class CoinTransactionResponse(CamelModel):
    """Schema for a coin ledger entry."""

    id: str
    order_id: str
    coins: int
    transaction_type: str
    description: str | None = None
    created_at: datetime


class CoinTransactionListResponse(CamelModel):
    """Schema for coin ledger list responses."""

    items: list[CoinTransactionResponse] = Field(description="Ledger entries, newest first")


class WebhookAck(CamelModel):
    """Acknowledgment returned to payment providers."""

    received: bool = True
