"""Checkout creation and manual payment verification."""

import logging
from dataclasses import dataclass

from src.models.payment import PaymentOrder
from src.services.errors import OrderNotFoundError, PaymentError
from src.services.order_ledger_service import OrderLedgerService
from src.services.payment_provider import CheckoutSession, PaymentProvider, ProviderPayment
from src.services.provider_registry import get_payment_providers, get_provider

logger = logging.getLogger(__name__)

CHECKOUT_CREATION_FAILED = "checkout_creation_failed"


@dataclass
class CheckoutResult:
    order: PaymentOrder
    session: CheckoutSession


@dataclass
class VerificationResult:
    paid: bool
    already_processed: bool
    order: PaymentOrder


class CheckoutService:
    """Service tying the order ledger to the provider adapters.

    Coins are only ever credited through OrderLedgerService.complete(); this
    service merely decides when to ask for it.
    """

    def __init__(
        self,
        ledger: OrderLedgerService,
        providers: dict[str, PaymentProvider] | None = None,
    ) -> None:
        """Initialize checkout service.

        Args:
            ledger: Order ledger bound to the request's session.
            providers: Provider adapters keyed by name.
        """
        self.ledger = ledger
        self.providers = providers if providers is not None else get_payment_providers()

    async def create_checkout(self, provider: str, tier_key: str, user_id: str) -> CheckoutResult:
        """Create a pending order and a hosted checkout for it.

        Args:
            provider: Provider name.
            tier_key: Whitelisted tier key.
            user_id: Purchasing user.

        Returns:
            CheckoutResult: The order (with its provider order ID) and the checkout.

        Raises:
            UnsupportedProviderError: If the provider is unknown.
            InvalidTierError: If the tier is not purchasable.
            ProviderError: If the provider rejects the checkout; the order is marked failed.
            ProviderConfigurationError: If the provider is not configured.
            TransientError: If storage or the provider is unavailable.
        """
        adapter = get_provider(self.providers, provider)
        order = await self.ledger.create_order(user_id, tier_key, provider)
        tier = await self.ledger.catalog.get_tier(tier_key)

        try:
            session = await adapter.create_checkout(tier, order.id, user_id)
        except PaymentError as e:
            logger.error("Checkout creation failed for order %s: %s", order.id, str(e))
            try:
                await self.ledger.fail(order.id, CHECKOUT_CREATION_FAILED, provider)
            except PaymentError:
                logger.exception("Could not mark order %s as failed", order.id)
            raise

        order = await self.ledger.attach_provider_order_id(order.id, session.provider_order_id)
        return CheckoutResult(order=order, session=session)

    async def verify_payment(self, provider: str, reference: str) -> VerificationResult:
        """Check a checkout with the provider and complete the order if it is paid.

        Used by the success page and by reconciliation when a webhook is late
        or lost. The provider lookup is read-only.

        Args:
            provider: Provider name.
            reference: Stripe Checkout Session ID or PayPal order ID.

        Raises:
            OrderNotFoundError: If no local order matches the checkout.
            OrderNotCompletableError: If the order already failed.
        """
        adapter = get_provider(self.providers, provider)
        payment = await adapter.fetch_payment(reference)
        return await self._reconcile(provider, payment)

    async def capture_payment(self, provider: str, provider_order_id: str) -> VerificationResult:
        """Capture an approved payment, then complete its order.

        Args:
            provider: Provider name; only providers with a capture step accept this.
            provider_order_id: Provider order ID approved by the buyer.
        """
        adapter = get_provider(self.providers, provider)
        payment = await adapter.capture_payment(provider_order_id)
        return await self._reconcile(provider, payment)

    async def _reconcile(self, provider: str, payment: ProviderPayment) -> VerificationResult:
        order = None
        if payment.order_id:
            order = await self.ledger.get_order(payment.order_id)
        if order is None:
            order = await self.ledger.get_order_by_provider_order_id(provider, payment.provider_order_id)
        if order is None or order.provider != provider:
            raise OrderNotFoundError(f"No order for {provider} checkout {payment.provider_order_id}")

        if not payment.paid:
            logger.info("%s checkout %s for order %s is not paid yet", provider, payment.provider_order_id, order.id)
            return VerificationResult(paid=False, already_processed=order.is_completed, order=order)

        if order.is_completed:
            return VerificationResult(paid=True, already_processed=True, order=order)

        result = await self.ledger.complete(order.id, payment.reference_id, provider)
        return VerificationResult(paid=True, already_processed=result.already_processed, order=result.order)
