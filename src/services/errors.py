"""Payment domain errors.

Callers distinguish failures that retrying can fix (TransientError) from
those it cannot. An already-credited order is not an error: see
CompletionResult.already_processed.
"""


class PaymentError(Exception):
    """Base class for payment domain errors."""


class InvalidTierError(PaymentError):
    """Tier key is unknown, inactive or not purchasable by this user."""


class UnsupportedProviderError(PaymentError):
    """Provider name is unknown, or the operation is not offered by it."""


class OrderNotFoundError(PaymentError):
    """No payment order matches the given reference."""


class OrderNotCompletableError(PaymentError):
    """Order exists but can no longer transition to completed."""


class SignatureInvalidError(PaymentError):
    """Webhook authenticity check failed or required headers are missing."""


class ProviderConfigurationError(PaymentError):
    """Provider credentials or webhook secrets are not configured."""


class ProviderError(PaymentError):
    """Provider rejected the request; retrying will not help."""


class TransientError(PaymentError):
    """Storage or provider temporarily unavailable; safe to retry later."""
