"""Payment provider construction from settings."""

from functools import lru_cache

from src.core.config import Settings, get_settings
from src.services.errors import UnsupportedProviderError
from src.services.payment_provider import PaymentProvider
from src.services.paypal_provider import PayPalProvider
from src.services.stripe_provider import StripeProvider


def build_payment_providers(settings: Settings) -> dict[str, PaymentProvider]:
    """Create one adapter per supported provider.

    Args:
        settings: Settings holding provider credentials and redirect URLs.

    Returns:
        dict: Adapters keyed by provider name.
    """
    return {
        "stripe": StripeProvider(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            success_url=settings.stripe_success_url,
            cancel_url=settings.stripe_cancel_url,
        ),
        "paypal": PayPalProvider(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            webhook_id=settings.paypal_webhook_id,
            base_url=settings.paypal_base_url,
            return_url=settings.paypal_return_url,
            cancel_url=settings.paypal_cancel_url,
            brand_name=settings.paypal_brand_name,
            timeout=settings.paypal_timeout_seconds,
        ),
    }


@lru_cache
def get_payment_providers() -> dict[str, PaymentProvider]:
    """Get the cached provider adapters for the application settings."""
    return build_payment_providers(get_settings())


def get_provider(providers: dict[str, PaymentProvider], name: str) -> PaymentProvider:
    """Look up an adapter by name.

    Raises:
        UnsupportedProviderError: If no adapter is registered under the name.
    """
    provider = providers.get(name)
    if provider is None:
        raise UnsupportedProviderError(f"Unsupported payment provider: {name}")
    return provider
