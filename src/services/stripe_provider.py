"""Stripe Checkout adapter."""

import json
import logging
from typing import Any, Mapping

import stripe

from src.core.stripe import get_stripe
from src.schemas.payment import PaymentTier
from src.services.errors import (
    ProviderConfigurationError,
    ProviderError,
    SignatureInvalidError,
    TransientError,
)
from src.services.payment_provider import (
    CheckoutSession,
    EventAction,
    PaymentProvider,
    ProviderPayment,
    VerifiedEvent,
)

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

# Checkout Session payment_status values that mean funds are secured
PAID_STATUSES = {"paid", "no_payment_required"}

FAILURE_EVENTS = {
    "checkout.session.async_payment_failed": "async_payment_failed",
    "checkout.session.expired": "checkout_expired",
}


def _value(obj: Any, key: str) -> Any:
    """Read a field from a Stripe object or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


class StripeProvider(PaymentProvider):
    """Creates Checkout Sessions and authenticates Stripe webhooks."""

    name = "stripe"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
        client: Any | None = None,
    ) -> None:
        """Initialize the Stripe adapter.

        Args:
            secret_key: Stripe secret API key, passed per request.
            webhook_secret: Endpoint signing secret (whsec_...).
            success_url: Redirect after payment; may contain {CHECKOUT_SESSION_ID}.
            cancel_url: Redirect when the buyer abandons checkout.
            client: Stripe module or a stand-in for testing.
        """
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.stripe = client or get_stripe()

    async def create_checkout(self, tier: PaymentTier, order_id: str, user_id: str) -> CheckoutSession:
        """Create a one-off Checkout Session priced from the tier.

        Raises:
            ProviderConfigurationError: If the secret key is not set.
            ProviderError: If Stripe rejects the request.
            TransientError: If Stripe is unreachable or overloaded.
        """
        self._require_secret_key()

        description = f"Get {tier.coins} coins"
        if tier.bonus_coins:
            description += f" + {tier.bonus_coins} bonus"

        try:
            session = self.stripe.checkout.Session.create(
                api_key=self.secret_key,
                idempotency_key=f"checkout-{order_id}",
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": tier.currency.lower(),
                            "product_data": {
                                "name": f"Coin Package - {tier.total_coins} Coins",
                                "description": description,
                            },
                            "unit_amount": tier.price_cents,
                        },
                        "quantity": 1,
                    }
                ],
                client_reference_id=order_id,
                metadata={
                    "order_id": order_id,
                    "user_id": user_id,
                    "tier_key": tier.key,
                    "coins": str(tier.total_coins),
                },
                payment_intent_data={"metadata": {"order_id": order_id}},
                success_url=self.success_url,
                cancel_url=self.cancel_url,
            )
        except stripe.StripeError as e:
            raise self._map_error(e, "create checkout session") from e

        checkout_url = _value(session, "url")
        if not checkout_url:
            raise ProviderError(f"Stripe returned no checkout URL for session {_value(session, 'id')}")

        logger.info("Created Stripe checkout session %s for order %s", _value(session, "id"), order_id)
        return CheckoutSession(checkout_url=checkout_url, provider_order_id=_value(session, "id"))

    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        """Verify the Stripe-Signature header against the raw body.

        Raises:
            ProviderConfigurationError: If the webhook secret is not set.
            SignatureInvalidError: If the header is missing, malformed, stale or wrong.
        """
        if not self.webhook_secret:
            raise ProviderConfigurationError("Stripe webhook secret is not configured")

        sig_header = headers.get("stripe-signature")
        if not sig_header:
            raise SignatureInvalidError("Missing Stripe-Signature header")

        try:
            self.stripe.Webhook.construct_event(
                raw_body,
                sig_header,
                self.webhook_secret,
                tolerance=SIGNATURE_TOLERANCE_SECONDS,
            )
        except stripe.SignatureVerificationError as e:
            raise SignatureInvalidError("Invalid Stripe signature") from e
        except ValueError as e:
            raise SignatureInvalidError("Malformed Stripe webhook payload") from e

        payload = json.loads(raw_body)
        if not payload.get("id"):
            raise SignatureInvalidError("Stripe webhook event has no id")
        data_object = (payload.get("data") or {}).get("object") or {}
        return VerifiedEvent(
            provider=self.name,
            event_id=payload["id"],
            event_type=payload.get("type", ""),
            resource=data_object,
            payload=payload,
        )

    def classify_event(self, event: VerifiedEvent) -> EventAction:
        session = event.resource
        order_id = (session.get("metadata") or {}).get("order_id") or session.get("client_reference_id")

        if event.event_type == "checkout.session.completed":
            if session.get("payment_status") in PAID_STATUSES:
                return EventAction(kind="complete", order_id=order_id)
            # Delayed methods settle later via async_payment_succeeded
            return EventAction(kind="ignore", order_id=order_id, reason="payment_not_settled")

        if event.event_type == "checkout.session.async_payment_succeeded":
            return EventAction(kind="complete", order_id=order_id)

        if event.event_type in FAILURE_EVENTS:
            return EventAction(kind="fail", order_id=order_id, reason=FAILURE_EVENTS[event.event_type])

        return EventAction(kind="ignore", order_id=order_id, reason="unhandled_event_type")

    async def fetch_payment(self, reference: str) -> ProviderPayment:
        """Retrieve a Checkout Session by ID.

        Args:
            reference: Checkout Session ID (cs_...).
        """
        self._require_secret_key()
        try:
            session = self.stripe.checkout.Session.retrieve(reference, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise self._map_error(e, "retrieve checkout session") from e

        metadata = _value(session, "metadata")
        session_id = _value(session, "id") or reference
        return ProviderPayment(
            provider_order_id=session_id,
            order_id=_value(metadata, "order_id") or _value(session, "client_reference_id"),
            paid=_value(session, "payment_status") in PAID_STATUSES,
            reference_id=self._payment_intent_id(session) or session_id,
        )

    def _require_secret_key(self) -> None:
        if not self.secret_key:
            raise ProviderConfigurationError("Stripe is not configured. Set STRIPE_SECRET_KEY.")

    @staticmethod
    def _payment_intent_id(session: Any) -> str | None:
        payment_intent = _value(session, "payment_intent")
        if payment_intent is None or isinstance(payment_intent, str):
            return payment_intent
        return _value(payment_intent, "id")

    @staticmethod
    def _map_error(error: stripe.StripeError, action: str) -> Exception:
        logger.error("Stripe failed to %s: %s", action, str(error))
        if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
            return TransientError(f"Stripe unavailable: {error.user_message or error}")
        if isinstance(error, stripe.AuthenticationError):
            return ProviderConfigurationError("Stripe rejected the configured API key")
        if (error.http_status or 0) >= 500:
            return TransientError(f"Stripe unavailable: {error.user_message or error}")
        return ProviderError(f"Stripe could not {action}: {error.user_message or error}")
