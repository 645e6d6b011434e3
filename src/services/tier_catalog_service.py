"""Coin package (tier) whitelist resolution."""

import logging
from typing import Any

from pydantic import ValidationError

from src.core.config import Settings, get_settings
from src.core.supabase import PACKAGES_TABLE, get_supabase_client
from src.schemas.payment import PaymentTier
from src.services.errors import InvalidTierError, TransientError

logger = logging.getLogger(__name__)

# Server-side whitelist; prices and coin amounts are never taken from clients
PAYMENT_TIERS: dict[str, PaymentTier] = {
    tier.key: tier
    for tier in (
        PaymentTier(
            key="coins_100",
            name="Starter Pack",
            coins=100,
            bonus_coins=0,
            price_cents=199,
            description="Perfect for trying out premium content",
        ),
        PaymentTier(
            key="coins_300",
            name="Popular Choice",
            coins=300,
            bonus_coins=50,
            price_cents=499,
            description="Most popular choice with bonus coins",
        ),
        PaymentTier(
            key="coins_500",
            name="Value Pack",
            coins=500,
            bonus_coins=100,
            price_cents=799,
            description="Great value with extra bonus coins",
        ),
        PaymentTier(
            key="coins_1000",
            name="Premium Pack",
            coins=1000,
            bonus_coins=300,
            price_cents=1299,
            description="Best value for heavy users",
        ),
        PaymentTier(
            key="coins_2000",
            name="Ultimate Pack",
            coins=2000,
            bonus_coins=800,
            price_cents=1999,
            description="Maximum value with huge bonus",
        ),
        PaymentTier(
            key="first_time_300",
            name="First Time Special",
            coins=300,
            bonus_coins=100,
            price_cents=299,
            is_first_time=True,
            description="Special offer for new users only",
        ),
    )
}


class TierCatalogService:
    """Resolve tier keys against the local whitelist or the remote package catalog."""

    def __init__(self, settings: Settings | None = None, client: Any | None = None) -> None:
        """Initialize tier catalog service.

        Args:
            settings: Optional settings for testing.
            client: Optional Supabase client for testing.
        """
        self.settings = settings or get_settings()
        self._client = client
        self._cache: dict[str, PaymentTier] = {}

    @property
    def is_remote(self) -> bool:
        return self.settings.tier_catalog_source == "remote"

    @property
    def client(self) -> Any:
        """Get the Supabase client, created on first use."""
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    async def get_tier(self, tier_key: str) -> PaymentTier:
        """Resolve a tier key.

        Args:
            tier_key: Key chosen by the client.

        Returns:
            PaymentTier: The whitelisted tier.

        Raises:
            InvalidTierError: If the key is unknown, inactive or malformed in the catalog.
            TransientError: If the remote catalog cannot be reached.
        """
        if tier_key in self._cache:
            return self._cache[tier_key]

        tier = await self._fetch_remote(tier_key) if self.is_remote else PAYMENT_TIERS.get(tier_key)
        if tier is None:
            raise InvalidTierError(f"Unknown tier: {tier_key}")

        self._cache[tier_key] = tier
        return tier

    async def list_tiers(self, first_time: bool | None = None) -> list[PaymentTier]:
        """List purchasable tiers.

        Args:
            first_time: If set, only return first-time (True) or regular (False) tiers.

        Returns:
            list[PaymentTier]: Tiers ordered by price.
        """
        if self.is_remote:
            rows = self._execute(
                self.client.table(PACKAGES_TABLE)
                .select("*")
                .eq("isActive", True)
                .order("order")
            )
            tiers = [tier for tier in (self._parse_remote_row(row) for row in rows or []) if tier]
        else:
            tiers = list(PAYMENT_TIERS.values())

        if first_time is not None:
            tiers = [tier for tier in tiers if tier.is_first_time == first_time]
        return sorted(tiers, key=lambda tier: tier.price_cents)

    async def _fetch_remote(self, tier_key: str) -> PaymentTier | None:
        row = self._execute(
            self.client.table(PACKAGES_TABLE)
            .select("*")
            .eq("id", tier_key)
            .eq("isActive", True)
            .maybe_single()
        )
        if not row:
            return None
        return self._parse_remote_row(row)

    @staticmethod
    def _execute(query: Any) -> Any:
        try:
            response = query.execute()
        except Exception as e:
            logger.error("Package catalog query failed: %s", str(e))
            raise TransientError("Package catalog unavailable") from e
        return response.data if response else None

    @staticmethod
    def _parse_remote_row(row: dict[str, Any]) -> PaymentTier | None:
        """Convert a payment_packages row into a PaymentTier.

        `priceUsd` must already be in cents. Rows that fail validation are
        logged and skipped rather than guessed at.
        """
        try:
            return PaymentTier(
                key=row["id"],
                name=row.get("name") or row["id"],
                coins=row["baseCoins"],
                bonus_coins=row.get("bonusCoins") or 0,
                price_cents=row["priceUsd"],
                currency="USD",
                is_first_time=bool(row.get("isFirstTime", False)),
                description=row.get("description"),
            )
        except (KeyError, ValidationError) as e:
            logger.error("Rejected malformed payment package %s: %s", row.get("id"), str(e))
            return None
