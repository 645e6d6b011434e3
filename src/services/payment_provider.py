"""Common interface for payment provider adapters."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from src.schemas.payment import PaymentTier
from src.services.errors import UnsupportedProviderError

EventKind = Literal["complete", "fail", "ignore"]


@dataclass
class VerifiedEvent:
    """A webhook event whose authenticity has been established."""

    provider: str
    event_id: str
    event_type: str
    resource: dict[str, Any]
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class EventAction:
    """What the ledger should do with a verified event."""

    kind: EventKind
    order_id: str | None = None
    reason: str | None = None


@dataclass
class CheckoutSession:
    """A hosted checkout created at the provider."""

    checkout_url: str
    provider_order_id: str


@dataclass
class ProviderPayment:
    """Provider-side view of a checkout, used by manual verification."""

    provider_order_id: str
    order_id: str | None
    paid: bool
    reference_id: str


class PaymentProvider(ABC):
    """Adapter between the order ledger and one payment provider."""

    name: str

    @abstractmethod
    async def create_checkout(self, tier: PaymentTier, order_id: str, user_id: str) -> CheckoutSession:
        """Create a hosted checkout for an order.

        The internal order ID is attached to the provider object so webhook
        events can be correlated back to it.
        """

    @abstractmethod
    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        """Authenticate a webhook delivery.

        Args:
            raw_body: Request body exactly as received.
            headers: Request headers (case-insensitive mapping).

        Raises:
            SignatureInvalidError: If the delivery is not authentic.
            ProviderConfigurationError: If the verification secret is missing.
            TransientError: If the provider could not be reached to verify.
        """

    @abstractmethod
    def classify_event(self, event: VerifiedEvent) -> EventAction:
        """Map a verified event to a ledger action."""

    @abstractmethod
    async def fetch_payment(self, reference: str) -> ProviderPayment:
        """Look up a checkout at the provider without changing it."""

    async def capture_payment(self, provider_order_id: str) -> ProviderPayment:
        """Capture an approved payment.

        Only providers with a separate capture step implement this.
        """
        raise UnsupportedProviderError(f"{self.name} does not support payment capture")
