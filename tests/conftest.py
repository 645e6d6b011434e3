"""Pytest configuration and fixtures."""

import hashlib
import hmac
import os
import time
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DATABASE_AUTO_CREATE", "false")
os.environ.setdefault("TIER_CATALOG_SOURCE", "local")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("PAYPAL_CLIENT_ID", "test-paypal-client-id")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "test-paypal-client-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST-1234")

STRIPE_WEBHOOK_SECRET = "whsec_test_webhook_secret"
PAYPAL_WEBHOOK_ID = "WH-TEST-1234"
PAYPAL_BASE_URL = "https://api-m.sandbox.paypal.com"


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    get_settings.cache_clear()
    settings = get_settings()
    yield settings
    get_settings.cache_clear()


@pytest.fixture
def engine(tmp_path: Any) -> Generator[Engine, None, None]:
    """Provide a file-backed SQLite engine with the ledger tables created.

    A file database (not :memory:) lets several connections share state,
    which the concurrency tests rely on.
    """
    from src.core.database import init_db, make_engine

    test_engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    """Provide a session factory bound to the test engine."""
    from src.core.database import make_session_factory

    return make_session_factory(engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Provide a database session, closed after the test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def catalog() -> Any:
    """Provide a tier catalog backed by the built-in whitelist."""
    from src.core.config import Settings
    from src.services.tier_catalog_service import TierCatalogService

    return TierCatalogService(settings=Settings(tier_catalog_source="local"))


@pytest.fixture
def ledger(db_session: Session, catalog: Any) -> Any:
    """Provide an order ledger on the test database."""
    from src.services.order_ledger_service import OrderLedgerService

    return OrderLedgerService(db_session, catalog)


@pytest.fixture
def mock_stripe() -> MagicMock:
    """Provide a mocked Stripe module for API calls.

    Webhook verification is not mocked: tests sign payloads for real.
    """
    import stripe

    mock = MagicMock()
    mock.Webhook = stripe.Webhook
    session = {
        "id": "cs_test_123",
        "url": "https://checkout.stripe.com/c/pay/cs_test_123",
    }
    mock.checkout.Session.create.return_value = session
    return mock


@pytest.fixture
def stripe_provider(mock_stripe: MagicMock) -> Any:
    """Provide a Stripe adapter using the mocked SDK."""
    from src.services.stripe_provider import StripeProvider

    return StripeProvider(
        secret_key="sk_test_stripe_secret_key",
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        success_url="https://shortdramini.com/payment/success?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://shortdramini.com/payment/cancel",
        client=mock_stripe,
    )


@pytest.fixture
def paypal_routes() -> dict[tuple[str, str], Any]:
    """Responses served by the fake PayPal API, keyed by (method, path).

    Values are httpx.Response objects or callables taking the request.
    Tests add or replace entries.
    """
    return {
        ("POST", "/v1/oauth2/token"): httpx.Response(
            200, json={"access_token": "A21-test-token", "token_type": "Bearer", "expires_in": 32400}
        ),
        ("POST", "/v1/notifications/verify-webhook-signature"): httpx.Response(
            200, json={"verification_status": "SUCCESS"}
        ),
    }


@pytest.fixture
def paypal_requests() -> list[httpx.Request]:
    """Requests received by the fake PayPal API, in order."""
    return []


@pytest.fixture
def paypal_transport(
    paypal_routes: dict[tuple[str, str], Any], paypal_requests: list[httpx.Request]
) -> httpx.MockTransport:
    """Provide an httpx transport emulating the PayPal REST API."""

    def handler(request: httpx.Request) -> httpx.Response:
        paypal_requests.append(request)
        route = paypal_routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
        if callable(route):
            return route(request)
        # Fresh copy so one canned response can serve repeated requests
        return httpx.Response(route.status_code, headers=route.headers, content=route.content)

    return httpx.MockTransport(handler)


@pytest.fixture
def paypal_provider(paypal_transport: httpx.MockTransport) -> Any:
    """Provide a PayPal adapter talking to the fake PayPal API."""
    from src.services.paypal_provider import PayPalProvider

    return PayPalProvider(
        client_id="test-paypal-client-id",
        client_secret="test-paypal-client-secret",
        webhook_id=PAYPAL_WEBHOOK_ID,
        base_url=PAYPAL_BASE_URL,
        return_url="https://shortdramini.com/payment/success?provider=paypal",
        cancel_url="https://shortdramini.com/payment/cancel?provider=paypal",
        max_attempts=1,
        transport=paypal_transport,
    )


@pytest.fixture
def providers(stripe_provider: Any, paypal_provider: Any) -> dict[str, Any]:
    """Provide both adapters keyed by provider name."""
    return {"stripe": stripe_provider, "paypal": paypal_provider}


@pytest.fixture
def sign_stripe_payload() -> Callable[..., str]:
    """Provide a function building a valid Stripe-Signature header."""

    def sign(payload: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.".encode() + payload
        signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"

    return sign


@pytest.fixture
def client(session_factory: sessionmaker[Session], providers: dict[str, Any]) -> Generator[TestClient, None, None]:
    """Provide a test client wired to the test database and provider adapters.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.api.deps import get_db, get_providers
    from src.main import app

    def override_get_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_providers] = lambda: providers

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
