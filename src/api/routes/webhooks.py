"""Webhook API routes for payment provider callbacks."""

import logging

from fastapi import APIRouter, Request, status

from src.api.deps import Webhooks
from src.api.middleware.error_handler import APIError, ServiceUnavailableError, to_api_error
from src.schemas.payment import WebhookAck
from src.services.errors import (
    PaymentError,
    ProviderConfigurationError,
    ProviderError,
    SignatureInvalidError,
    TransientError,
    UnsupportedProviderError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _webhook_error(error: PaymentError, provider: str) -> APIError | None:
    """Decide how a failed delivery is answered.

    Returns None when the delivery should be acknowledged anyway because
    redelivering it cannot succeed.
    """
    if isinstance(error, TransientError):
        return ServiceUnavailableError("Temporarily unable to process webhook, please retry")
    if isinstance(error, ProviderConfigurationError):
        logger.error("Rejecting %s webhook, provider not configured: %s", provider, str(error))
        return to_api_error(error)
    if isinstance(error, (SignatureInvalidError, UnsupportedProviderError)):
        return to_api_error(error)
    if isinstance(error, ProviderError):
        logger.error("Rejecting %s webhook, provider call failed: %s", provider, str(error))
        return to_api_error(error)
    logger.error("Acknowledging %s webhook despite unexpected error: %s", provider, str(error))
    return None


@router.post(
    "/{provider}",
    response_model=WebhookAck,
    status_code=status.HTTP_200_OK,
    summary="Handle payment provider webhooks",
    description="Receives Stripe and PayPal events. The signature is verified against the raw body before processing.",
)
async def provider_webhook(provider: str, request: Request, service: Webhooks) -> WebhookAck:
    """Handle a payment provider webhook delivery.

    Handles:
    - checkout.session.completed (paid) / checkout.session.async_payment_succeeded: complete the order
    - checkout.session.async_payment_failed / checkout.session.expired: fail the order
    - PAYMENT.CAPTURE.COMPLETED: complete the order
    - PAYMENT.CAPTURE.DENIED / PAYMENT.CAPTURE.DECLINED: fail the order

    Any other authentic event is acknowledged without action.

    Args:
        provider: "stripe" or "paypal".
        request: FastAPI request object for reading raw body and headers.
        service: Webhook service.

    Returns:
        WebhookAck: {"received": true}.

    Raises:
        BadRequestError: 400 if the signature is invalid or headers are missing.
        ServiceUnavailableError: 503 if processing should be retried.
    """
    # Signatures cover the exact bytes received
    payload = await request.body()
    logger.debug("Received %s webhook (%d bytes)", provider, len(payload))

    try:
        outcome = await service.handle(provider, payload, request.headers)
    except PaymentError as e:
        api_error = _webhook_error(e, provider)
        if api_error is not None:
            raise api_error from e
        return WebhookAck()

    logger.info(
        "Processed %s webhook %s (%s): %s",
        provider,
        outcome.event_id,
        outcome.event_type,
        outcome.status,
    )
    return WebhookAck()
