#!/usr/bin/env python
"""Script to re-verify pending payment orders with their providers.

This script:
1. Lists pending orders older than a minimum age
2. Looks up each order's checkout at Stripe or PayPal
3. Completes orders the provider reports as paid, through the same ledger
   completion used by webhooks, so coins are never credited twice

Usage:
    python scripts/reconcile_pending_orders.py [MIN_AGE_MINUTES]

Requirements:
    - DATABASE_URL pointing at the ledger database
    - Provider credentials for every provider with pending orders

Note:
    - Orders without a provider order ID never reached the provider and are skipped
    - PayPal orders approved but never captured stay pending; capture them
      through POST /api/v1/payment/capture/paypal
"""

import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy.orm import Session, sessionmaker

from src.core.database import get_session_factory
from src.models.payment import utcnow
from src.services.checkout_service import CheckoutService
from src.services.errors import PaymentError
from src.services.order_ledger_service import OrderLedgerService
from src.services.payment_provider import PaymentProvider
from src.services.provider_registry import get_payment_providers

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_MIN_AGE_MINUTES = 15


async def reconcile_pending_orders(
    session_factory: sessionmaker[Session],
    providers: dict[str, PaymentProvider],
    min_age: timedelta,
) -> dict[str, Any]:
    """Verify every pending order older than min_age.

    Args:
        session_factory: Ledger session factory.
        providers: Provider adapters keyed by name.
        min_age: Skip orders younger than this; their webhook may still arrive.

    Returns:
        dict: Counts of checked, completed, already processed, unpaid, skipped and failed orders.
    """
    results = {"checked": 0, "completed": 0, "already_processed": 0, "unpaid": 0, "skipped": 0, "failed": 0}

    with session_factory() as db:
        ledger = OrderLedgerService(db)
        orders = await ledger.list_pending_orders(older_than=utcnow() - min_age)
        logger.info("Found %d pending orders older than %s", len(orders), min_age)

        service = CheckoutService(ledger, providers)
        for order in orders:
            results["checked"] += 1
            if not order.provider_order_id:
                logger.info("Skipping order %s: never reached %s", order.id, order.provider)
                results["skipped"] += 1
                continue

            try:
                result = await service.verify_payment(order.provider, order.provider_order_id)
            except PaymentError as e:
                results["failed"] += 1
                logger.error("Failed to verify order %s (%s): %s", order.id, order.provider, e)
                continue

            if not result.paid:
                results["unpaid"] += 1
            elif result.already_processed:
                results["already_processed"] += 1
            else:
                results["completed"] += 1
                logger.info("Completed order %s: credited %d coins to %s", order.id, order.coins, order.user_id)

    return results


async def main() -> None:
    """Main entry point for the reconciliation script."""
    min_age_minutes = int(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_MIN_AGE_MINUTES
    logger.info("Starting pending order reconciliation...")

    try:
        results = await reconcile_pending_orders(
            get_session_factory(),
            get_payment_providers(),
            timedelta(minutes=min_age_minutes),
        )

        logger.info("=" * 60)
        logger.info("Reconciliation complete!")
        logger.info("Pending orders checked: %d", results["checked"])
        logger.info("Completed now: %d", results["completed"])
        logger.info("Already processed: %d", results["already_processed"])
        logger.info("Not paid yet: %d", results["unpaid"])
        logger.info("Skipped (no provider order): %d", results["skipped"])
        logger.info("Failed: %d", results["failed"])
        logger.info("=" * 60)

        if results["failed"] > 0:
            logger.warning("Some orders could not be verified. Check logs for details.")
            sys.exit(1)

    except Exception as e:
        logger.error("Reconciliation failed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
