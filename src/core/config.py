"""Application configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PAYPAL_API_BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Provider secrets default to empty strings; the provider adapters refuse
    to operate without them instead of silently skipping verification.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="dramini-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,https://shortdramini.com",
        description="Comma-separated list of allowed CORS origins",
    )

    # Requests
    max_request_body_size: int = Field(default=1_048_576, description="Maximum request body size in bytes")

    # Database
    database_url: str = Field(default="sqlite:///./payments.db", description="SQLAlchemy database URL")
    database_echo: bool = Field(default=False, description="Log SQL statements")
    database_auto_create: bool = Field(default=True, description="Create missing tables at startup")

    # Tier catalog
    tier_catalog_source: Literal["local", "remote"] = Field(
        default="local",
        description="Resolve tiers from the built-in whitelist or the Supabase payment_packages table",
    )
    supabase_url: str = Field(default="", description="Supabase project URL (remote tier catalog)")
    supabase_secret_key: str = Field(default="", description="Supabase secret key (remote tier catalog)")

    # Stripe
    stripe_secret_key: str = Field(default="", description="Stripe secret API key")
    stripe_webhook_secret: str = Field(default="", description="Stripe webhook signing secret")
    stripe_max_network_retries: int = Field(default=2, description="Stripe SDK automatic retries")

    # PayPal
    paypal_client_id: str = Field(default="", description="PayPal REST client ID")
    paypal_client_secret: str = Field(default="", description="PayPal REST client secret")
    paypal_webhook_id: str = Field(default="", description="PayPal webhook ID used for signature verification")
    paypal_environment: Literal["sandbox", "live"] = Field(default="sandbox", description="PayPal environment")
    paypal_timeout_seconds: float = Field(default=10.0, description="Timeout for PayPal API calls")
    paypal_brand_name: str = Field(default="Dramini", description="Brand name shown on PayPal checkout")

    # Frontend
    web_base_url: str = Field(
        default="https://shortdramini.com",
        description="Frontend base URL for payment success/cancel redirects",
    )

    @model_validator(mode="after")
    def check_remote_catalog_credentials(self) -> "Settings":
        """Require Supabase credentials when tiers are resolved remotely."""
        if self.tier_catalog_source == "remote" and not (self.supabase_url and self.supabase_secret_key):
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SECRET_KEY are required when TIER_CATALOG_SOURCE=remote"
            )
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def is_stripe_test_mode(self) -> bool:
        """Check if using Stripe test keys."""
        return self.stripe_secret_key.startswith("sk_test_")

    @property
    def paypal_base_url(self) -> str:
        """PayPal REST API base URL for the configured environment."""
        return PAYPAL_API_BASE_URLS[self.paypal_environment]

    @property
    def stripe_success_url(self) -> str:
        base = self.web_base_url.rstrip("/")
        return f"{base}/payment/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def stripe_cancel_url(self) -> str:
        return f"{self.web_base_url.rstrip('/')}/payment/cancel"

    @property
    def paypal_return_url(self) -> str:
        return f"{self.web_base_url.rstrip('/')}/payment/success?provider=paypal"

    @property
    def paypal_cancel_url(self) -> str:
        return f"{self.web_base_url.rstrip('/')}/payment/cancel?provider=paypal"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
