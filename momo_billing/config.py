"""
MoMo Billing - Configuration Settings

This module handles all application configuration using Pydantic Settings.
Environment variables are loaded from .env file.
"""

from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )
    
    # ===========================================
    # APPLICATION CONFIGURATION
    # ===========================================
    app_name: str = "MoMo Billing"
    app_env: str = "development"
    debug: bool = False
    api_version: str = "v1"
    base_url: str = "http://localhost:5120"  # Public URL used for gateway callbacks
    
    # ===========================================
    # DATABASE CONFIGURATION
    # ===========================================
    database_url_async: str = "sqlite+aiosqlite:///./momo_billing.db"
    database_echo: bool = False
    
    # ===========================================
    # REDIS CONFIGURATION (Celery broker)
    # ===========================================
    redis_url: str = "redis://localhost:6379/0"
    
    # ===========================================
    # PAYSTACK PAYMENT GATEWAY (https://paystack.com)
    # Used for: Mobile money charges, verification, mandate cancellation
    # Ghana Cedi (GHS) transactions
    # ===========================================
    paystack_secret_key: str = ""
    paystack_public_key: str = ""
    paystack_webhook_secret: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: int = 15  # Bounded; gateway calls are never retried in-process
    
    @property
    def paystack_is_live(self) -> bool:
        """Check if using live Paystack keys (sk_live_*)."""
        return self.paystack_secret_key.startswith("sk_live_")
    
    @property
    def webhook_signing_secret(self) -> str:
        """Paystack signs webhooks with the secret key unless a dedicated secret is set."""
        return self.paystack_webhook_secret or self.paystack_secret_key
    
    # ===========================================
    # MOMO RECURRING BILLING
    # ===========================================
    momo_currency: str = "GHS"
    momo_callback_url: str = ""
    momo_max_failures: int = 3  # Consecutive failures before an overdue subscription fails
    momo_store_max_retries: int = 3  # Optimistic-concurrency retries per atomic update
    momo_overdue_sweep_minutes: int = 60
    
    @property
    def momo_callback_target(self) -> str:
        """Callback URL handed to the gateway for redirects."""
        return self.momo_callback_url or f"{self.base_url}/billing/momo/callback"
    
    # ===========================================
    # CORS SETTINGS
    # ===========================================
    cors_origins: str = "http://localhost:3000,http://localhost:5120,http://127.0.0.1:5120"
    
    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string into list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]
    
    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env.lower() == "production"
    
    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()


# Export settings instance
settings = get_settings()
