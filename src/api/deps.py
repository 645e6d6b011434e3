"""FastAPI dependency injection functions."""

from typing import Annotated, Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from src.core.database import get_session_factory
from src.services.checkout_service import CheckoutService
from src.services.order_ledger_service import OrderLedgerService
from src.services.payment_provider import PaymentProvider
from src.services.provider_registry import get_payment_providers
from src.services.tier_catalog_service import TierCatalogService
from src.services.webhook_service import WebhookService


def get_db() -> Generator[Session, None, None]:
    """Yield a database session scoped to the request.

    Yields:
        Session: SQLAlchemy session, closed when the request finishes.
    """
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def get_tier_catalog() -> TierCatalogService:
    """Get a tier catalog; its memo lives for one request."""
    return TierCatalogService()


def get_providers() -> dict[str, PaymentProvider]:
    """Get the configured payment provider adapters."""
    return get_payment_providers()


DbSession = Annotated[Session, Depends(get_db)]
TierCatalog = Annotated[TierCatalogService, Depends(get_tier_catalog)]
Providers = Annotated[dict[str, PaymentProvider], Depends(get_providers)]


def get_order_ledger(db: DbSession, catalog: TierCatalog) -> OrderLedgerService:
    """Get the order ledger bound to the request's session."""
    return OrderLedgerService(db, catalog)


OrderLedger = Annotated[OrderLedgerService, Depends(get_order_ledger)]


def get_checkout_service(ledger: OrderLedger, providers: Providers) -> CheckoutService:
    """Get the checkout service for this request."""
    return CheckoutService(ledger, providers)


def get_webhook_service(ledger: OrderLedger, providers: Providers) -> WebhookService:
    """Get the webhook service for this request."""
    return WebhookService(ledger, providers)


Checkout = Annotated[CheckoutService, Depends(get_checkout_service)]
Webhooks = Annotated[WebhookService, Depends(get_webhook_service)]
