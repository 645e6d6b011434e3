"""Stripe SDK configuration."""

import logging

import stripe

from src.core.config import get_settings

logger = logging.getLogger(__name__)


def configure_stripe() -> None:
    """Configure process-wide Stripe SDK behaviour.

    This should be called once at application startup. The API key is not
    installed globally: the Stripe provider passes it on every call.
    """
    settings = get_settings()
    stripe.max_network_retries = settings.stripe_max_network_retries
    if not settings.stripe_secret_key:
        logger.warning("Stripe secret key not configured. Stripe checkout will not work.")
    if not settings.stripe_webhook_secret:
        logger.warning("Stripe webhook secret not configured. Stripe webhooks will be rejected.")


def get_stripe() -> stripe:
    """Get the Stripe module.

    Returns:
        stripe: The Stripe module.

    Note:
        Returned through a function so tests can patch the SDK in one place.
    """
    return stripe
