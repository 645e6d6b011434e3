"""Webhook intake: authenticate, classify and apply provider events."""

import logging
from dataclasses import dataclass
from typing import Literal, Mapping

from src.services.errors import OrderNotCompletableError, OrderNotFoundError
from src.services.order_ledger_service import OrderLedgerService
from src.services.payment_provider import PaymentProvider
from src.services.provider_registry import get_payment_providers, get_provider

logger = logging.getLogger(__name__)

OutcomeStatus = Literal["completed", "already_processed", "failed", "ignored", "order_not_found", "not_completable"]


@dataclass
class WebhookOutcome:
    """What happened to a delivery. Every outcome is acknowledged to the provider."""

    status: OutcomeStatus
    event_id: str
    event_type: str
    order_id: str | None = None


class WebhookService:
    """Service processing provider webhook deliveries.

    Only authentic events reach the ledger. Errors that a redelivery could
    fix (TransientError, ProviderConfigurationError) propagate so the route
    answers with a 5xx and the provider retries; everything else is
    acknowledged.
    """

    def __init__(
        self,
        ledger: OrderLedgerService,
        providers: dict[str, PaymentProvider] | None = None,
    ) -> None:
        self.ledger = ledger
        self.providers = providers if providers is not None else get_payment_providers()

    async def handle(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        """Process one webhook delivery.

        Args:
            provider: Provider name from the URL.
            raw_body: Request body exactly as received.
            headers: Request headers.

        Returns:
            WebhookOutcome: The action taken.

        Raises:
            UnsupportedProviderError: If the provider is unknown.
            SignatureInvalidError: If the delivery is not authentic; nothing is written.
            ProviderConfigurationError: If the verification secret is missing.
            TransientError: If verification or storage is temporarily unavailable.
        """
        adapter = get_provider(self.providers, provider)
        event = await adapter.verify_webhook(raw_body, headers)
        action = adapter.classify_event(event)

        logger.info(
            "Verified %s webhook %s (%s): action=%s order=%s",
            provider,
            event.event_id,
            event.event_type,
            action.kind,
            action.order_id,
        )

        outcome = WebhookOutcome(
            status="ignored",
            event_id=event.event_id,
            event_type=event.event_type,
            order_id=action.order_id,
        )

        if action.kind == "ignore":
            logger.debug("Ignoring %s event %s: %s", provider, event.event_type, action.reason)
            return outcome

        if not action.order_id:
            logger.warning("%s event %s (%s) carries no order reference", provider, event.event_id, event.event_type)
            outcome.status = "order_not_found"
            return outcome

        try:
            if action.kind == "complete":
                result = await self.ledger.complete(action.order_id, event.event_id, provider)
                outcome.order_id = result.order.id
                outcome.status = "already_processed" if result.already_processed else "completed"
            else:
                order = await self.ledger.fail(action.order_id, action.reason or event.event_type, provider)
                outcome.status = "failed" if order.status == "failed" else "ignored"
        except OrderNotFoundError:
            logger.warning("%s event %s refers to unknown order %s", provider, event.event_id, action.order_id)
            outcome.status = "order_not_found"
        except OrderNotCompletableError as e:
            logger.warning("%s event %s not applied: %s", provider, event.event_id, str(e))
            outcome.status = "not_completable"

        return outcome
