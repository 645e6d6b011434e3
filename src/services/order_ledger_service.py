"""Payment order lifecycle and coin crediting.

This service is the only writer of order status and coin balances. Every
credit, whether triggered by a webhook or by a manual verification, goes
through `complete()`.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.models.payment import (
    CoinTransaction,
    OrderStatus,
    PaymentOrder,
    ProviderName,
    TransactionType,
    UserCoinBalance,
    utcnow,
)
from src.services.errors import (
    InvalidTierError,
    OrderNotCompletableError,
    OrderNotFoundError,
    TransientError,
    UnsupportedProviderError,
)
from src.services.tier_catalog_service import TierCatalogService

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = {provider.value for provider in ProviderName}


@dataclass
class CompletionResult:
    """Outcome of a completion request.

    already_processed is True when the order had been credited before this
    call; no writes were made in that case.
    """

    already_processed: bool
    order: PaymentOrder


class OrderLedgerService:
    """Service for payment orders and the coin ledger.

    Transactions are kept short: every public method ends its transaction
    before returning, with commit() on success so loaded orders stay usable.
    """

    def __init__(self, db: Session, catalog: TierCatalogService | None = None) -> None:
        """Initialize the ledger.

        Args:
            db: SQLAlchemy session, one per request.
            catalog: Tier catalog used to resolve tier keys.
        """
        self.db = db
        self.catalog = catalog or TierCatalogService()

    async def create_order(self, user_id: str, tier_key: str, provider: str) -> PaymentOrder:
        """Create a pending order for a whitelisted tier.

        Args:
            user_id: Purchasing user.
            tier_key: Tier key chosen by the client.
            provider: Payment provider name.

        Returns:
            PaymentOrder: The new pending order.

        Raises:
            InvalidTierError: If the tier is unknown or not available to this user.
            UnsupportedProviderError: If the provider is unknown.
            TransientError: If the store or the remote catalog is unavailable.
        """
        if provider not in SUPPORTED_PROVIDERS:
            raise UnsupportedProviderError(f"Unsupported payment provider: {provider}")

        tier = await self.catalog.get_tier(tier_key)

        try:
            if tier.is_first_time and self._has_completed_order(user_id):
                self.db.rollback()
                raise InvalidTierError(f"Tier {tier_key} is only available on a first purchase")

            order = PaymentOrder(
                user_id=user_id,
                tier_key=tier.key,
                provider=provider,
                amount_cents=tier.price_cents,
                currency=tier.currency,
                coins=tier.total_coins,
                status=OrderStatus.PENDING.value,
                order_metadata={
                    "tier_name": tier.name,
                    "base_coins": tier.coins,
                    "bonus_coins": tier.bonus_coins,
                },
            )
            self.db.add(order)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Failed to create order for user %s: %s", user_id, str(e))
            raise TransientError("Order store unavailable") from e

        logger.info(
            "Created %s order %s for user %s (tier=%s, amount=%d, coins=%d)",
            provider,
            order.id,
            user_id,
            tier.key,
            order.amount_cents,
            order.coins,
        )
        return order

    async def attach_provider_order_id(self, order_id: str, provider_order_id: str) -> PaymentOrder:
        """Record the provider-side checkout/order ID on an order.

        Safe to repeat; the same value is expected on every call.

        Raises:
            OrderNotFoundError: If the order does not exist.
            TransientError: If the store is unavailable.
        """
        try:
            order = self.db.get(PaymentOrder, order_id, populate_existing=True)
            if order is None:
                self.db.rollback()
                raise OrderNotFoundError(f"Order not found: {order_id}")
            if order.provider_order_id and order.provider_order_id != provider_order_id:
                logger.warning(
                    "Order %s provider order ID changed from %s to %s",
                    order_id,
                    order.provider_order_id,
                    provider_order_id,
                )
            order.provider_order_id = provider_order_id
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientError("Order store unavailable") from e
        return order

    async def complete(self, order_ref: str, provider_event_id: str, provider: str) -> CompletionResult:
        """Mark an order completed and credit its coins, at most once.

        The status flip, the balance increment and the purchase transaction
        commit together. The flip is conditional on the order still being
        pending, so of two concurrent callers only one can credit; the other
        observes the completed order and reports already_processed.

        Args:
            order_ref: Internal order ID, the provider event ID that completed
                it, or the provider order ID.
            provider_event_id: Provider event (or payment) ID causing completion.
            provider: Provider name.

        Returns:
            CompletionResult: already_processed and the current order.

        Raises:
            OrderNotFoundError: If no order of this provider matches the reference.
            OrderNotCompletableError: If the order has already failed.
            TransientError: If the store is unavailable; nothing was written.
        """
        try:
            order = self._find_order(order_ref, provider_event_id, provider, lock=True)
            if order is None:
                self.db.rollback()
                raise OrderNotFoundError(f"Order not found: {order_ref}")

            if order.status == OrderStatus.COMPLETED:
                self.db.commit()
                logger.info("Order %s already completed (event %s)", order.id, provider_event_id)
                return CompletionResult(already_processed=True, order=order)

            if order.status == OrderStatus.FAILED:
                self.db.rollback()
                raise OrderNotCompletableError(f"Order {order.id} has failed and cannot be completed")

            now = utcnow()
            flipped = self.db.execute(
                update(PaymentOrder)
                .where(PaymentOrder.id == order.id, PaymentOrder.status == OrderStatus.PENDING.value)
                .values(
                    status=OrderStatus.COMPLETED.value,
                    provider_event_id=provider_event_id,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount == 0:
                # Another completer got there first
                self.db.rollback()
                return self._resolve_duplicate(order.id, provider_event_id, provider)

            self._credit_balance(order.user_id, order.coins, now)
            self._record_transaction(order)
            self.db.commit()

        except IntegrityError:
            self.db.rollback()
            logger.info("Duplicate completion of %s (event %s) rejected by constraint", order_ref, provider_event_id)
            return self._resolve_duplicate(order_ref, provider_event_id, provider)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Completion of %s failed and was rolled back: %s", order_ref, str(e))
            raise TransientError("Order store unavailable") from e

        order = self._reload(order)
        logger.info(
            "Order %s completed by %s event %s: credited %d coins to user %s",
            order.id,
            provider,
            provider_event_id,
            order.coins,
            order.user_id,
        )
        return CompletionResult(already_processed=False, order=order)

    async def fail(self, order_id: str, reason: str, provider: str | None = None) -> PaymentOrder:
        """Move a pending order to failed.

        Already failed orders are returned unchanged. Completed orders are
        never reverted; the request is logged and ignored.

        Args:
            order_id: Internal order ID.
            reason: Why the payment failed, stored on the order.
            provider: When given, the order must have been checked out with it.

        Raises:
            OrderNotFoundError: If the order does not exist for this provider.
            TransientError: If the store is unavailable.
        """
        try:
            order = self.db.get(PaymentOrder, order_id, populate_existing=True, with_for_update=True)
            if order is None or (provider and order.provider != provider):
                self.db.rollback()
                raise OrderNotFoundError(f"Order not found: {order_id}")

            if order.status != OrderStatus.PENDING:
                if order.status == OrderStatus.COMPLETED:
                    logger.warning("Ignoring failure (%s) for completed order %s", reason, order_id)
                self.db.commit()
                return order

            self.db.execute(
                update(PaymentOrder)
                .where(PaymentOrder.id == order_id, PaymentOrder.status == OrderStatus.PENDING.value)
                .values(status=OrderStatus.FAILED.value, failure_reason=reason[:255], updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientError("Order store unavailable") from e

        order = self._reload(order)
        logger.info("Order %s is %s (%s)", order_id, order.status, reason)
        return order

    async def get_order(self, order_id: str) -> PaymentOrder | None:
        """Get an order by ID."""
        return self._read(lambda: self.db.get(PaymentOrder, order_id, populate_existing=True))

    async def get_order_by_provider_order_id(self, provider: str, provider_order_id: str) -> PaymentOrder | None:
        """Get an order by the provider's checkout session / order ID."""
        query = select(PaymentOrder).where(
            PaymentOrder.provider == provider,
            PaymentOrder.provider_order_id == provider_order_id,
        )
        return self._read(lambda: self._first(query))

    async def get_balance(self, user_id: str) -> UserCoinBalance | None:
        """Get a user's coin balance row, if any coins were ever credited."""
        query = select(UserCoinBalance).where(UserCoinBalance.user_id == user_id)
        return self._read(lambda: self._first(query))

    async def list_transactions(self, user_id: str, limit: int = 50) -> list[CoinTransaction]:
        """List a user's coin ledger entries, newest first."""
        query = (
            select(CoinTransaction)
            .where(CoinTransaction.user_id == user_id)
            .order_by(CoinTransaction.created_at.desc())
            .limit(limit)
        )
        return self._read(lambda: list(self.db.scalars(query)))

    async def list_pending_orders(
        self,
        provider: str | None = None,
        older_than: datetime | None = None,
    ) -> list[PaymentOrder]:
        """List pending orders, oldest first.

        Args:
            provider: Restrict to one provider.
            older_than: Only orders created before this instant.
        """
        query = select(PaymentOrder).where(PaymentOrder.status == OrderStatus.PENDING.value)
        if provider:
            query = query.where(PaymentOrder.provider == provider)
        if older_than:
            query = query.where(PaymentOrder.created_at < older_than)
        query = query.order_by(PaymentOrder.created_at)
        return self._read(lambda: list(self.db.scalars(query)))

    def _find_order(
        self, order_ref: str, provider_event_id: str, provider: str, lock: bool = False
    ) -> PaymentOrder | None:
        """Locate the order a completion refers to.

        Tried in order: internal ID, an order already completed by this
        provider event, the provider order ID. Only orders checked out with
        this provider match. With lock=True the row is selected FOR UPDATE on
        databases that support it.
        """
        queries = [
            select(PaymentOrder).where(PaymentOrder.id == order_ref, PaymentOrder.provider == provider),
            select(PaymentOrder).where(
                PaymentOrder.provider == provider,
                PaymentOrder.provider_event_id.in_([order_ref, provider_event_id]),
            ),
            select(PaymentOrder).where(
                PaymentOrder.provider == provider,
                PaymentOrder.provider_order_id == order_ref,
            ),
        ]
        for query in queries:
            order = self._first(query.with_for_update() if lock else query)
            if order is not None:
                return order
        return None

    def _resolve_duplicate(self, order_ref: str, provider_event_id: str, provider: str) -> CompletionResult:
        """Re-read state after losing a completion race or hitting a unique constraint."""
        try:
            order = self._find_order(order_ref, provider_event_id, provider)
            owner = None
            if order is not None and order.status == OrderStatus.PENDING:
                # The event was consumed by a different order
                owner = self._first(
                    select(PaymentOrder).where(
                        PaymentOrder.provider == provider,
                        PaymentOrder.provider_event_id == provider_event_id,
                    )
                )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientError("Order store unavailable") from e

        if order is None:
            raise OrderNotFoundError(f"Order not found: {order_ref}")
        if order.status == OrderStatus.FAILED:
            raise OrderNotCompletableError(f"Order {order.id} has failed and cannot be completed")
        if order.status == OrderStatus.PENDING:
            if owner is None:
                raise TransientError(f"Completion of order {order.id} did not commit")
            logger.warning(
                "Event %s already completed order %s; not applied to order %s",
                provider_event_id,
                owner.id,
                order.id,
            )
            order = owner
        return CompletionResult(already_processed=True, order=order)

    def _credit_balance(self, user_id: str, coins: int, now: datetime) -> None:
        increment = (
            update(UserCoinBalance)
            .where(UserCoinBalance.user_id == user_id)
            .values(
                balance=UserCoinBalance.balance + coins,
                total_earned=UserCoinBalance.total_earned + coins,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(increment).rowcount:
            return

        try:
            with self.db.begin_nested():
                self.db.add(UserCoinBalance(user_id=user_id, balance=coins, total_earned=coins))
        except IntegrityError:
            # Balance row created meanwhile by a credit for another order
            self.db.execute(increment)

    def _record_transaction(self, order: PaymentOrder) -> None:
        amount = f"{order.amount_cents // 100}.{order.amount_cents % 100:02d}"
        self.db.add(
            CoinTransaction(
                user_id=order.user_id,
                order_id=order.id,
                coins=order.coins,
                transaction_type=TransactionType.PURCHASE.value,
                description=f"{order.provider.capitalize()} purchase {order.tier_key} ({amount} {order.currency})",
            )
        )
        self.db.flush()

    def _has_completed_order(self, user_id: str) -> bool:
        query = (
            select(PaymentOrder.id)
            .where(PaymentOrder.user_id == user_id, PaymentOrder.status == OrderStatus.COMPLETED.value)
            .limit(1)
        )
        return self.db.scalars(query).first() is not None

    def _first(self, query: Select) -> Any:
        return self.db.scalars(query.execution_options(populate_existing=True)).first()

    def _reload(self, order: PaymentOrder) -> PaymentOrder:
        """Refresh an order after a committed write and end the read."""
        try:
            self.db.refresh(order)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientError("Order store unavailable") from e
        return order

    def _read(self, fetch: Callable[[], Any]) -> Any:
        try:
            result = fetch()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientError("Order store unavailable") from e
        return result
