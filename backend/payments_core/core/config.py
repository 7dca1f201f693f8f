"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Payments Core"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Tracing
    OTLP_ENDPOINT: Optional[str] = None

    # Database (inbox, idempotency keys, per-tenant provider configs)
    DATABASE_URL: str = "sqlite+aiosqlite:///./payments.db"

    # Redis (idempotency store when IDEMPOTENCY_BACKEND=redis)
    REDIS_URL: str = "redis://localhost:6379/0"

    # CORS
    CORS_ORIGINS: list[str] = []

    # Tenancy and provider selection
    DEFAULT_TENANT_ID: str = "default"
    DEFAULT_PROVIDER: str = "lemonsqueezy"

    # Provider calls are bounded by this timeout; the adapters never retry
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # Webhook pipeline
    WEBHOOK_STRICT_IDEMPOTENCY: bool = True

    # Backends: memory, redis / memory, database / settings, database
    IDEMPOTENCY_BACKEND: str = "memory"
    IDEMPOTENCY_TTL_SECONDS: int = 86400
    INBOX_BACKEND: str = "memory"
    CONFIG_BACKEND: str = "settings"

    # Encryption key for provider credentials stored in the database
    CREDENTIALS_ENCRYPTION_KEY: str = ""

    # Provider credentials (CONFIG_BACKEND=settings)
    LIVE_MODE: bool = False
    DEFAULT_CURRENCY: str = "USD"

    LEMONSQUEEZY_API_KEY: str = ""
    LEMONSQUEEZY_STORE_ID: str = ""
    LEMONSQUEEZY_WEBHOOK_SECRET: str = ""
    # JSON object: variant id -> plan id
    LEMONSQUEEZY_VARIANT_MAPPING: dict[str, str] = {}

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    # JSON object: price id -> plan id
    STRIPE_PRICE_MAPPING: dict[str, str] = {}

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
