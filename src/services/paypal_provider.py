"""PayPal Orders v2 adapter over the REST API."""

import json
import logging
import time
from typing import Any, Mapping

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

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

# Retry configuration
DEFAULT_MAX_ATTEMPTS = 3
MIN_WAIT_SECONDS = 0.5
MAX_WAIT_SECONDS = 4

# Refresh the OAuth token this long before PayPal expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 60

TRANSMISSION_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}

FAILURE_EVENTS = {
    "PAYMENT.CAPTURE.DENIED": "capture_denied",
    "PAYMENT.CAPTURE.DECLINED": "capture_declined",
}


def format_amount(amount_cents: int) -> str:
    """Format integer minor units as a PayPal decimal string (499 -> "4.99")."""
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


def parse_custom_id(custom_id: str | None) -> str | None:
    """Extract the internal order ID from a purchase unit custom_id.

    New orders carry the bare order ID. Older orders carry a JSON object,
    which may or may not include an orderId.
    """
    if not custom_id:
        return None
    if not custom_id.lstrip().startswith("{"):
        return custom_id
    try:
        data = json.loads(custom_id)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return data.get("orderId") or data.get("order_id")


class _RetryableResponse(Exception):
    """PayPal answered with a status worth retrying (429 or 5xx)."""

    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"PayPal returned HTTP {response.status_code}")
        self.response = response


class PayPalProvider(PaymentProvider):
    """Creates PayPal orders, captures them and verifies PayPal webhooks."""

    name = "paypal"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        base_url: str,
        return_url: str,
        cancel_url: str,
        brand_name: str = "Dramini",
        timeout: float = 10.0,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the PayPal adapter.

        Args:
            client_id: REST app client ID.
            client_secret: REST app secret.
            webhook_id: ID of the webhook registration, required to verify deliveries.
            base_url: API base URL for the sandbox or live environment.
            return_url: Redirect after the buyer approves.
            cancel_url: Redirect when the buyer cancels.
            brand_name: Brand shown on the PayPal checkout page.
            timeout: Per-request timeout in seconds.
            max_attempts: Attempts per request on network errors, 429 and 5xx.
            transport: Optional httpx transport for testing.
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.base_url = base_url.rstrip("/")
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.brand_name = brand_name
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self._transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def create_checkout(self, tier: PaymentTier, order_id: str, user_id: str) -> CheckoutSession:
        """Create a PayPal order with intent CAPTURE.

        Raises:
            ProviderConfigurationError: If credentials are missing or rejected.
            ProviderError: If PayPal rejects the order.
            TransientError: If PayPal is unreachable.
        """
        description = f"Coin Package - {tier.coins} Coins"
        if tier.bonus_coins:
            description += f" + {tier.bonus_coins} bonus"

        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order_id,
                    "custom_id": order_id,
                    "description": description,
                    "amount": {
                        "currency_code": tier.currency,
                        "value": format_amount(tier.price_cents),
                    },
                }
            ],
            "application_context": {
                "brand_name": self.brand_name,
                "landing_page": "NO_PREFERENCE",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
            },
        }
        response = await self._send(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={"PayPal-Request-Id": f"checkout-{order_id}", "Prefer": "return=representation"},
        )
        data = self._json(response, "create order")

        approve_url = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approve_url:
            raise ProviderError(f"PayPal returned no approval link for order {data.get('id')}")

        logger.info("Created PayPal order %s for order %s (user %s)", data.get("id"), order_id, user_id)
        return CheckoutSession(checkout_url=approve_url, provider_order_id=data["id"])

    async def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        """Verify a delivery with PayPal's verify-webhook-signature API.

        The event is forwarded as the exact bytes received; re-serializing it
        would change the signed content.

        Raises:
            ProviderConfigurationError: If credentials or the webhook ID are missing.
            SignatureInvalidError: If headers are missing or PayPal does not confirm the signature.
            TransientError: If PayPal cannot be reached.
        """
        if not self.webhook_id:
            raise ProviderConfigurationError("PayPal webhook ID is not configured")

        fields: dict[str, str] = {}
        for field_name, header in TRANSMISSION_HEADERS.items():
            value = headers.get(header)
            if not value:
                raise SignatureInvalidError(f"Missing {header} header")
            fields[field_name] = value
        fields["webhook_id"] = self.webhook_id

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise SignatureInvalidError("Malformed PayPal webhook payload") from e
        if not isinstance(payload, dict):
            raise SignatureInvalidError("Malformed PayPal webhook payload")
        if not payload.get("id"):
            raise SignatureInvalidError("PayPal webhook event has no id")

        envelope = json.dumps(fields).encode()[:-1] + b', "webhook_event": ' + raw_body.strip() + b"}"
        response = await self._send(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            content=envelope,
            headers={"Content-Type": "application/json"},
        )
        try:
            result = self._json(response, "verify webhook signature")
        except ProviderConfigurationError:
            raise
        except ProviderError as e:
            # Anything short of a readable SUCCESS leaves the delivery unverified
            raise SignatureInvalidError("PayPal did not confirm the webhook signature") from e

        status = result.get("verification_status") if isinstance(result, dict) else None
        if status != "SUCCESS":
            logger.warning(
                "PayPal webhook %s failed verification: %s",
                fields["transmission_id"],
                status,
            )
            raise SignatureInvalidError("Invalid PayPal signature")

        return VerifiedEvent(
            provider=self.name,
            event_id=payload["id"],
            event_type=payload.get("event_type", ""),
            resource=payload.get("resource") or {},
            payload=payload,
        )

    def classify_event(self, event: VerifiedEvent) -> EventAction:
        resource = event.resource
        related_ids = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        order_id = parse_custom_id(resource.get("custom_id")) or related_ids.get("order_id")

        if event.event_type == "PAYMENT.CAPTURE.COMPLETED":
            if resource.get("status") == "COMPLETED":
                return EventAction(kind="complete", order_id=order_id)
            return EventAction(kind="ignore", order_id=order_id, reason="capture_not_settled")

        if event.event_type in FAILURE_EVENTS:
            return EventAction(kind="fail", order_id=order_id, reason=FAILURE_EVENTS[event.event_type])

        return EventAction(kind="ignore", order_id=order_id, reason="unhandled_event_type")

    async def fetch_payment(self, reference: str) -> ProviderPayment:
        """Get a PayPal order by ID.

        Args:
            reference: PayPal order ID.
        """
        response = await self._send("GET", f"/v2/checkout/orders/{reference}")
        return self._to_payment(self._json(response, "get order"), reference)

    async def capture_payment(self, provider_order_id: str) -> ProviderPayment:
        """Capture an approved PayPal order.

        Capturing an order twice is not an error: the existing capture is
        returned.
        """
        response = await self._send(
            "POST",
            f"/v2/checkout/orders/{provider_order_id}/capture",
            json={},
            headers={"PayPal-Request-Id": f"capture-{provider_order_id}", "Prefer": "return=representation"},
        )
        if response.status_code == 422 and "ORDER_ALREADY_CAPTURED" in response.text:
            logger.info("PayPal order %s was already captured", provider_order_id)
            return await self.fetch_payment(provider_order_id)

        payment = self._to_payment(self._json(response, "capture order"), provider_order_id)
        logger.info("Captured PayPal order %s (paid=%s)", provider_order_id, payment.paid)
        return payment

    @staticmethod
    def _to_payment(data: dict[str, Any], provider_order_id: str) -> ProviderPayment:
        unit = (data.get("purchase_units") or [{}])[0]
        captures = (unit.get("payments") or {}).get("captures") or []
        completed = next((c for c in captures if c.get("status") == "COMPLETED"), None)
        return ProviderPayment(
            provider_order_id=data.get("id") or provider_order_id,
            order_id=parse_custom_id(unit.get("custom_id")) or unit.get("reference_id"),
            paid=data.get("status") == "COMPLETED" and completed is not None,
            reference_id=completed["id"] if completed else data.get("id") or provider_order_id,
        )

    async def _access_token(self) -> str:
        """Get an OAuth2 access token, reusing a cached one until it nears expiry."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        if not (self.client_id and self.client_secret):
            raise ProviderConfigurationError(
                "PayPal is not configured. Set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET."
            )

        response = await self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        if response.status_code in (400, 401, 403):
            raise ProviderConfigurationError("PayPal rejected the configured client credentials")
        data = self._json(response, "obtain access token")

        self._token = data["access_token"]
        expires_in = int(data.get("expires_in", 0))
        self._token_expires_at = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
        return self._token

    async def _send(self, method: str, path: str, headers: dict[str, str] | None = None, **kwargs: Any) -> httpx.Response:
        """Send an authorized request, renewing the token once if PayPal rejects it."""
        for attempt in range(2):
            token = await self._access_token()
            response = await self._request(
                method,
                path,
                headers={**(headers or {}), "Authorization": f"Bearer {token}"},
                **kwargs,
            )
            if response.status_code != 401 or attempt:
                return response
            logger.info("PayPal access token rejected, requesting a new one")
            self._token = None
        return response

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request with retries on network errors, 429 and 5xx.

        Raises:
            TransientError: If every attempt failed.
        """
        start_time = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                async for attempt in AsyncRetrying(
                    retry=retry_if_exception_type((httpx.TransportError, _RetryableResponse)),
                    stop=stop_after_attempt(self.max_attempts),
                    wait=wait_exponential(multiplier=1, min=MIN_WAIT_SECONDS, max=MAX_WAIT_SECONDS),
                    reraise=True,
                ):
                    with attempt:
                        response = await client.request(method, path, **kwargs)
                        if response.status_code == 429 or response.status_code >= 500:
                            raise _RetryableResponse(response)
        except (httpx.TransportError, _RetryableResponse) as e:
            logger.error("PayPal %s %s failed after %d attempts: %s", method, path, self.max_attempts, str(e))
            raise TransientError(f"PayPal unavailable: {e}") from e

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.debug("PayPal %s %s - %d - %.2fms", method, path, response.status_code, latency_ms)
        return response

    def _json(self, response: httpx.Response, action: str) -> dict[str, Any]:
        if response.status_code in (401, 403):
            raise ProviderConfigurationError(f"PayPal refused to {action}: HTTP {response.status_code}")
        if response.is_error:
            logger.error("PayPal failed to %s: HTTP %d %s", action, response.status_code, response.text[:500])
            raise ProviderError(f"PayPal could not {action}: HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"PayPal returned an unreadable response to {action}") from e
