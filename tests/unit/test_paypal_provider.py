"""Unit tests for PayPalProvider."""

import json
from typing import Any

import httpx
import pytest

from src.services.errors import (
    ProviderConfigurationError,
    ProviderError,
    SignatureInvalidError,
    TransientError,
)
from src.services.payment_provider import VerifiedEvent
from src.services.paypal_provider import PayPalProvider, format_amount, parse_custom_id
from src.services.tier_catalog_service import PAYMENT_TIERS

TRANSMISSION_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.sandbox.paypal.com/v1/notifications/certs/CERT-360caa42",
    "paypal-transmission-id": "69cd13f0-d67a-11e5-baa3-778b53f4ae55",
    "paypal-transmission-sig": "lmI95Jx3Y9nhR5SJWlHVIWpg4AgFk7n9bCHSRxbrd8A9zrhdu2rMyFrmz+Zjh3s3boXB07VXCXUZy/UFzUlnGJn0wDugt7FlSvdKeIJenLRemUxYCPVoEZzg9VFNqOa48gMkvF+XTpxBeUx/kWy6B5cp7GkT2+pOowfRK7OaynuxUoKW3JcMWw272VKjLTtTAShncla7tGF+55rxyt2KNZIIqxNMJ48RDZheGU5w1npu9dZHnPgTXB9iomeVRoD8O/jhRpnKsGrDschyNdkeh81BJJMH4Ctc6lnCCquoP/GzCzz33MMsNdid7vL/NIWaCsekQpW26FpWPi/tfj8nLA==",
    "paypal-transmission-time": "2016-02-18T20:01:35Z",
}


def _webhook_body(event_type: str = "PAYMENT.CAPTURE.COMPLETED", **resource: Any) -> bytes:
    data = {
        "id": "WH-2WR32451HC0233532-67976317FL4543714",
        "event_type": event_type,
        "resource": {"id": "CAPTURE-1", "status": "COMPLETED", "custom_id": "order-1", **resource},
    }
    # Irregular spacing to make re-serialization detectable
    return json.dumps(data, indent=1).encode()


def _paypal_order(status: str = "APPROVED", captures: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    unit: dict[str, Any] = {"reference_id": "order-1", "custom_id": "order-1"}
    if captures is not None:
        unit["payments"] = {"captures": captures}
    return {"id": "5O190127TN364715T", "status": status, "purchase_units": [unit]}


class TestHelpers:
    """Tests for amount formatting and custom_id parsing."""

    @pytest.mark.parametrize("cents,expected", [(0, "0.00"), (5, "0.05"), (299, "2.99"), (1999, "19.99"), (100000, "1000.00")])
    def test_format_amount(self, cents: int, expected: str) -> None:
        """Test that integer cents format without floating point."""
        assert format_amount(cents) == expected

    def test_parse_custom_id(self) -> None:
        """Test plain and legacy JSON custom_id values."""
        assert parse_custom_id("order-1") == "order-1"
        assert parse_custom_id('{"orderId": "order-2", "coins": 100}') == "order-2"
        assert parse_custom_id('{"plan": "coins_100", "coins": 100}') is None
        assert parse_custom_id("{not json") is None
        assert parse_custom_id(None) is None


class TestCreateCheckout:
    """Tests for create_checkout."""

    @pytest.mark.asyncio
    async def test_creates_capture_order(
        self,
        paypal_provider: PayPalProvider,
        paypal_routes: dict[tuple[str, str], Any],
        paypal_requests: list[httpx.Request],
    ) -> None:
        """Test that the order is created with the tier amount and the approval link is returned."""
        paypal_routes[("POST", "/v2/checkout/orders")] = httpx.Response(
            201,
            json={
                "id": "5O190127TN364715T",
                "status": "CREATED",
                "links": [
                    {"href": "https://api.sandbox.paypal.com/v2/checkout/orders/5O190127TN364715T", "rel": "self"},
                    {"href": "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T", "rel": "approve"},
                ],
            },
        )

        session = await paypal_provider.create_checkout(PAYMENT_TIERS["coins_300"], "order-1", "user-1")

        assert session.provider_order_id == "5O190127TN364715T"
        assert session.checkout_url == "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T"

        token_request, create_request = paypal_requests
        assert token_request.url.path == "/v1/oauth2/token"
        assert create_request.headers["Authorization"] == "Bearer A21-test-token"
        assert create_request.headers["PayPal-Request-Id"] == "checkout-order-1"
        body = json.loads(create_request.content)
        assert body["intent"] == "CAPTURE"
        unit = body["purchase_units"][0]
        assert unit["amount"] == {"currency_code": "USD", "value": "4.99"}
        assert unit["custom_id"] == "order-1"
        assert unit["reference_id"] == "order-1"

    @pytest.mark.asyncio
    async def test_access_token_is_cached(
        self,
        paypal_provider: PayPalProvider,
        paypal_routes: dict[tuple[str, str], Any],
        paypal_requests: list[httpx.Request],
    ) -> None:
        """Test that one OAuth token serves several calls."""
        paypal_routes[("GET", "/v2/checkout/orders/5O190127TN364715T")] = httpx.Response(200, json=_paypal_order())

        await paypal_provider.fetch_payment("5O190127TN364715T")
        await paypal_provider.fetch_payment("5O190127TN364715T")

        paths = [request.url.path for request in paypal_requests]
        assert paths.count("/v1/oauth2/token") == 1

    @pytest.mark.asyncio
    async def test_missing_credentials_is_configuration_error(self, paypal_transport: httpx.MockTransport) -> None:
        """Test that calls fail fast without client credentials."""
        provider = PayPalProvider("", "", "WH-1", "https://api-m.sandbox.paypal.com", "https://a/ok", "https://a/cancel", transport=paypal_transport)

        with pytest.raises(ProviderConfigurationError):
            await provider.create_checkout(PAYMENT_TIERS["coins_100"], "order-1", "user-1")

    @pytest.mark.asyncio
    async def test_rejected_credentials_is_configuration_error(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any]
    ) -> None:
        """Test that invalid client credentials map to ProviderConfigurationError."""
        paypal_routes[("POST", "/v1/oauth2/token")] = httpx.Response(401, json={"error": "invalid_client"})

        with pytest.raises(ProviderConfigurationError):
            await paypal_provider.create_checkout(PAYMENT_TIERS["coins_100"], "order-1", "user-1")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any]
    ) -> None:
        """Test that 5xx responses map to TransientError."""
        paypal_routes[("POST", "/v2/checkout/orders")] = httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"})

        with pytest.raises(TransientError):
            await paypal_provider.create_checkout(PAYMENT_TIERS["coins_100"], "order-1", "user-1")

    @pytest.mark.asyncio
    async def test_network_error_is_transient(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any]
    ) -> None:
        """Test that connection failures map to TransientError."""

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        paypal_routes[("POST", "/v2/checkout/orders")] = refuse

        with pytest.raises(TransientError):
            await paypal_provider.create_checkout(PAYMENT_TIERS["coins_100"], "order-1", "user-1")

    @pytest.mark.asyncio
    async def test_retries_transient_failures(
        self,
        paypal_transport: httpx.MockTransport,
        paypal_routes: dict[tuple[str, str], Any],
        paypal_requests: list[httpx.Request],
    ) -> None:
        """Test that a 5xx followed by success is retried transparently."""
        responses = iter(
            [
                httpx.Response(500, json={"name": "INTERNAL_SERVER_ERROR"}),
                httpx.Response(200, json=_paypal_order()),
            ]
        )
        paypal_routes[("GET", "/v2/checkout/orders/5O190127TN364715T")] = lambda request: next(responses)
        provider = PayPalProvider(
            "id", "secret", "WH-1", "https://api-m.sandbox.paypal.com", "https://a/ok", "https://a/cancel",
            max_attempts=2, transport=paypal_transport,
        )

        payment = await provider.fetch_payment("5O190127TN364715T")

        assert payment.provider_order_id == "5O190127TN364715T"
        paths = [request.url.path for request in paypal_requests]
        assert paths.count("/v2/checkout/orders/5O190127TN364715T") == 2

    @pytest.mark.asyncio
    async def test_client_error_is_provider_error(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any]
    ) -> None:
        """Test that 4xx rejections map to ProviderError."""
        paypal_routes[("POST", "/v2/checkout/orders")] = httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY"})

        with pytest.raises(ProviderError):
            await paypal_provider.create_checkout(PAYMENT_TIERS["coins_100"], "order-1", "user-1")


class TestVerifyWebhook:
    """Tests for verify_webhook."""

    @pytest.mark.asyncio
    async def test_successful_verification(
        self, paypal_provider: PayPalProvider, paypal_requests: list[httpx.Request]
    ) -> None:
        """Test that the raw event bytes and transmission headers are forwarded."""
        body = _webhook_body()

        event = await paypal_provider.verify_webhook(body, TRANSMISSION_HEADERS)

        assert event.provider == "paypal"
        assert event.event_type == "PAYMENT.CAPTURE.COMPLETED"
        assert event.resource["custom_id"] == "order-1"

        verify_request = paypal_requests[-1]
        assert verify_request.url.path == "/v1/notifications/verify-webhook-signature"
        assert body in verify_request.content
        envelope = json.loads(verify_request.content)
        assert envelope["webhook_id"] == "WH-TEST-1234"
        assert envelope["transmission_id"] == TRANSMISSION_HEADERS["paypal-transmission-id"]
        assert envelope["transmission_sig"] == TRANSMISSION_HEADERS["paypal-transmission-sig"]
        assert envelope["cert_url"] == TRANSMISSION_HEADERS["paypal-cert-url"]
        assert envelope["auth_algo"] == "SHA256withRSA"
        assert envelope["webhook_event"]["id"] == "WH-2WR32451HC0233532-67976317FL4543714"

    @pytest.mark.asyncio
    async def test_failed_verification_is_rejected(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any]
    ) -> None:
        """Test that a FAILURE status rejects the event."""
        paypal_routes[("POST", "/v1/notifications/verify-webhook-signature")] = httpx.Response(
            200, json={"verification_status": "FAILURE"}
        )

        with pytest.raises(SignatureInvalidError):
            await paypal_provider.verify_webhook(_webhook_body(), TRANSMISSION_HEADERS)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [404, 422])
    async def test_unexpected_verification_status_is_rejected(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any], status_code: int
    ) -> None:
        """Test that a client error from the verify API leaves the event unverified."""
        paypal_routes[("POST", "/v1/notifications/verify-webhook-signature")] = httpx.Response(
            status_code, json={"name": "UNPROCESSABLE_ENTITY"}
        )

        with pytest.raises(SignatureInvalidError):
            await paypal_provider.verify_webhook(_webhook_body(), TRANSMISSION_HEADERS)

    @pytest.mark.asyncio
    async def test_unreadable_verification_response_is_rejected(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any]
    ) -> None:
        """Test that a non-JSON verification answer is not treated as success."""
        paypal_routes[("POST", "/v1/notifications/verify-webhook-signature")] = httpx.Response(
            200, text="<html>upstream proxy</html>"
        )

        with pytest.raises(SignatureInvalidError):
            await paypal_provider.verify_webhook(_webhook_body(), TRANSMISSION_HEADERS)

    @pytest.mark.asyncio
    async def test_event_without_id_is_rejected(
        self, paypal_provider: PayPalProvider, paypal_requests: list[httpx.Request]
    ) -> None:
        """Test that an event lacking its ID is rejected before calling PayPal."""
        body = json.dumps({"event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"custom_id": "order-1"}}).encode()

        with pytest.raises(SignatureInvalidError):
            await paypal_provider.verify_webhook(body, TRANSMISSION_HEADERS)

        assert paypal_requests == []

    @pytest.mark.asyncio
    async def test_missing_transmission_header_is_rejected(
        self, paypal_provider: PayPalProvider, paypal_requests: list[httpx.Request]
    ) -> None:
        """Test that incomplete header sets are rejected without calling PayPal."""
        headers = {k: v for k, v in TRANSMISSION_HEADERS.items() if k != "paypal-transmission-sig"}

        with pytest.raises(SignatureInvalidError):
            await paypal_provider.verify_webhook(_webhook_body(), headers)

        assert paypal_requests == []

    @pytest.mark.asyncio
    async def test_missing_webhook_id_is_configuration_error(self, paypal_transport: httpx.MockTransport) -> None:
        """Test that verification is never skipped without a webhook ID."""
        provider = PayPalProvider("id", "secret", "", "https://api-m.sandbox.paypal.com", "https://a/ok", "https://a/cancel", transport=paypal_transport)

        with pytest.raises(ProviderConfigurationError):
            await provider.verify_webhook(_webhook_body(), TRANSMISSION_HEADERS)

    @pytest.mark.asyncio
    async def test_malformed_body_is_rejected(self, paypal_provider: PayPalProvider) -> None:
        """Test that a non-JSON body is rejected."""
        with pytest.raises(SignatureInvalidError):
            await paypal_provider.verify_webhook(b"not json", TRANSMISSION_HEADERS)

    @pytest.mark.asyncio
    async def test_verification_outage_is_transient(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any]
    ) -> None:
        """Test that PayPal being down asks for redelivery rather than rejecting."""
        paypal_routes[("POST", "/v1/notifications/verify-webhook-signature")] = httpx.Response(502)

        with pytest.raises(TransientError):
            await paypal_provider.verify_webhook(_webhook_body(), TRANSMISSION_HEADERS)


class TestClassifyEvent:
    """Tests for classify_event."""

    @staticmethod
    def _verified(event_type: str, **resource: Any) -> VerifiedEvent:
        payload = json.loads(_webhook_body(event_type, **resource))
        return VerifiedEvent("paypal", payload["id"], event_type, payload["resource"], payload)

    def test_completed_capture_completes(self, paypal_provider: PayPalProvider) -> None:
        """Test that a completed capture completes its order."""
        action = paypal_provider.classify_event(self._verified("PAYMENT.CAPTURE.COMPLETED"))

        assert action.kind == "complete"
        assert action.order_id == "order-1"

    def test_pending_capture_is_ignored(self, paypal_provider: PayPalProvider) -> None:
        """Test that captures under review do not complete the order."""
        action = paypal_provider.classify_event(self._verified("PAYMENT.CAPTURE.COMPLETED", status="PENDING"))

        assert action.kind == "ignore"

    def test_denied_capture_fails(self, paypal_provider: PayPalProvider) -> None:
        """Test that denied captures fail the order."""
        action = paypal_provider.classify_event(self._verified("PAYMENT.CAPTURE.DENIED", status="DECLINED"))

        assert action.kind == "fail"
        assert action.reason == "capture_denied"

    def test_legacy_custom_id_falls_back_to_related_order(self, paypal_provider: PayPalProvider) -> None:
        """Test that old JSON custom_ids resolve through the related PayPal order ID."""
        action = paypal_provider.classify_event(
            self._verified(
                "PAYMENT.CAPTURE.COMPLETED",
                custom_id='{"plan": "coins_100", "coins": 100}',
                supplementary_data={"related_ids": {"order_id": "5O190127TN364715T"}},
            )
        )

        assert action.kind == "complete"
        assert action.order_id == "5O190127TN364715T"

    def test_other_events_are_ignored(self, paypal_provider: PayPalProvider) -> None:
        """Test that unrelated event types are acknowledged without action."""
        action = paypal_provider.classify_event(self._verified("CHECKOUT.ORDER.APPROVED"))

        assert action.kind == "ignore"


class TestCapturePayment:
    """Tests for fetch_payment and capture_payment."""

    @pytest.mark.asyncio
    async def test_capture_completes(
        self,
        paypal_provider: PayPalProvider,
        paypal_routes: dict[tuple[str, str], Any],
        paypal_requests: list[httpx.Request],
    ) -> None:
        """Test that a successful capture is reported paid with the capture ID."""
        paypal_routes[("POST", "/v2/checkout/orders/5O190127TN364715T/capture")] = httpx.Response(
            201, json=_paypal_order("COMPLETED", [{"id": "CAPTURE-1", "status": "COMPLETED"}])
        )

        payment = await paypal_provider.capture_payment("5O190127TN364715T")

        assert payment.paid is True
        assert payment.reference_id == "CAPTURE-1"
        assert payment.order_id == "order-1"
        assert paypal_requests[-1].headers["PayPal-Request-Id"] == "capture-5O190127TN364715T"

    @pytest.mark.asyncio
    async def test_already_captured_order_is_fetched(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any]
    ) -> None:
        """Test that capturing twice returns the existing capture."""
        paypal_routes[("POST", "/v2/checkout/orders/5O190127TN364715T/capture")] = httpx.Response(
            422, json={"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]}
        )
        paypal_routes[("GET", "/v2/checkout/orders/5O190127TN364715T")] = httpx.Response(
            200, json=_paypal_order("COMPLETED", [{"id": "CAPTURE-1", "status": "COMPLETED"}])
        )

        payment = await paypal_provider.capture_payment("5O190127TN364715T")

        assert payment.paid is True
        assert payment.reference_id == "CAPTURE-1"

    @pytest.mark.asyncio
    async def test_approved_but_uncaptured_order_is_unpaid(
        self, paypal_provider: PayPalProvider, paypal_routes: dict[tuple[str, str], Any]
    ) -> None:
        """Test that an approved order without a capture is not paid."""
        paypal_routes[("GET", "/v2/checkout/orders/5O190127TN364715T")] = httpx.Response(200, json=_paypal_order())

        payment = await paypal_provider.fetch_payment("5O190127TN364715T")

        assert payment.paid is False
        assert payment.reference_id == "5O190127TN364715T"
