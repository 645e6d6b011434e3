"""Coin purchase API routes.

Payment domain errors raised here are translated to HTTP errors by the
error handler middleware.
"""

import logging

from fastapi import APIRouter, Query, status

from src.api.deps import Checkout, OrderLedger, TierCatalog
from src.api.middleware.error_handler import NotFoundError
from src.schemas.payment import (
    CapturePaymentRequest,
    CheckoutRequest,
    CheckoutResponse,
    CoinBalanceResponse,
    CoinTransactionListResponse,
    CoinTransactionResponse,
    OrderResponse,
    TierListResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from src.services.checkout_service import VerificationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment", tags=["payment"])


def _verification_response(result: VerificationResult) -> VerifyPaymentResponse:
    return VerifyPaymentResponse(
        paid=result.paid,
        already_processed=result.already_processed,
        order=OrderResponse.model_validate(result.order),
    )


@router.get(
    "/tiers",
    response_model=TierListResponse,
    summary="List coin packages",
    description="Returns the purchasable coin packages, ordered by price.",
)
async def list_tiers(
    catalog: TierCatalog,
    first_time: bool | None = Query(default=None, alias="firstTime", description="Filter first-purchase offers"),
) -> TierListResponse:
    """List purchasable tiers.

    Args:
        catalog: Tier catalog.
        first_time: Only first-time offers (true) or only regular packages (false).

    Returns:
        TierListResponse: Tiers with their prices and coin amounts.
    """
    tiers = await catalog.list_tiers(first_time=first_time)
    return TierListResponse(items=tiers)


@router.post(
    "/checkout/{provider}",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create checkout",
    description="Creates a pending order and a provider-hosted checkout. Prices come from the server-side tier whitelist.",
)
async def create_checkout(provider: str, data: CheckoutRequest, service: Checkout) -> CheckoutResponse:
    """Create a checkout for a coin package.

    The frontend redirects the buyer to checkoutUrl. Coins are credited
    when the provider reports the payment, never by this call.

    Args:
        provider: "stripe" or "paypal".
        data: Tier key and purchasing user.
        service: Checkout service.

    Returns:
        CheckoutResponse: Redirect URL and the created order ID.
    """
    result = await service.create_checkout(provider, data.tier_key, data.user_id)

    return CheckoutResponse(
        checkout_url=result.session.checkout_url,
        order_id=result.order.id,
        provider_order_id=result.session.provider_order_id,
    )


@router.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
    description="Returns the current state of a payment order.",
)
async def get_order(order_id: str, ledger: OrderLedger) -> OrderResponse:
    """Get an order by ID.

    Raises:
        NotFoundError: 404 if the order does not exist.
    """
    order = await ledger.get_order(order_id)
    if order is None:
        raise NotFoundError(f"Order not found: {order_id}")
    return OrderResponse.model_validate(order)


@router.post(
    "/verify/{provider}",
    response_model=VerifyPaymentResponse,
    summary="Verify payment",
    description="Checks a checkout with the provider and credits the order if it is paid and not yet credited.",
)
async def verify_payment(provider: str, data: VerifyPaymentRequest, service: Checkout) -> VerifyPaymentResponse:
    """Verify a payment from the success page.

    Safe to call any number of times and concurrently with webhook
    delivery; coins are credited at most once.

    Args:
        provider: "stripe" or "paypal".
        data: Stripe sessionId or PayPal orderId.
        service: Checkout service.

    Returns:
        VerifyPaymentResponse: Paid flag, whether it was already credited, and the order.
    """
    result = await service.verify_payment(provider, data.reference)
    return _verification_response(result)


@router.post(
    "/capture/paypal",
    response_model=VerifyPaymentResponse,
    summary="Capture PayPal payment",
    description="Captures a PayPal order the buyer approved, then credits it.",
)
async def capture_paypal_payment(data: CapturePaymentRequest, service: Checkout) -> VerifyPaymentResponse:
    """Capture an approved PayPal order.

    Args:
        data: PayPal order ID.
        service: Checkout service.

    Returns:
        VerifyPaymentResponse: Capture outcome and the order.
    """
    result = await service.capture_payment("paypal", data.order_id)
    return _verification_response(result)


@router.get(
    "/users/{user_id}/coins",
    response_model=CoinBalanceResponse,
    summary="Get coin balance",
)
async def get_coin_balance(user_id: str, ledger: OrderLedger) -> CoinBalanceResponse:
    """Get a user's coin balance. Users who never bought coins have zero."""
    balance = await ledger.get_balance(user_id)
    if balance is None:
        return CoinBalanceResponse(user_id=user_id)
    return CoinBalanceResponse.model_validate(balance)


@router.get(
    "/users/{user_id}/transactions",
    response_model=CoinTransactionListResponse,
    summary="List coin transactions",
)
async def list_coin_transactions(
    user_id: str,
    ledger: OrderLedger,
    limit: int = Query(default=50, ge=1, le=200, description="Maximum entries to return"),
) -> CoinTransactionListResponse:
    """List a user's coin ledger entries, newest first."""
    transactions = await ledger.list_transactions(user_id, limit=limit)
    return CoinTransactionListResponse(
        items=[CoinTransactionResponse.model_validate(t) for t in transactions]
    )
