"""Supabase client singleton for the remote tier catalog."""

from functools import lru_cache
from typing import Any

from supabase import Client, create_client

from src.core.config import get_settings

PACKAGES_TABLE = "payment_packages"


@lru_cache
def get_supabase_client() -> Client:
    """Get cached Supabase client singleton.

    Uses the secret key for backend reads of the package catalog. Only
    constructed when TIER_CATALOG_SOURCE=remote.

    Returns:
        Client: Supabase client instance.
    """
    settings = get_settings()
    return create_client(
        settings.supabase_url,
        settings.supabase_secret_key,
    )


async def check_catalog_connection() -> dict[str, Any]:
    """Check if the remote package catalog is reachable.

    Returns:
        dict: Connection status with 'healthy' boolean and optional 'error' message.
    """
    try:
        client = get_supabase_client()
        client.table(PACKAGES_TABLE).select("id").limit(1).execute()
        return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}
