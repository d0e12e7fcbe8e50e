"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "ConvertViral Billing API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False

    # Database - REQUIRED
    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    # Redis - REQUIRED (webhook idempotency markers)
    REDIS_URL: str

    # Security - REQUIRED (no defaults for sensitive values)
    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # CORS
    CORS_ORIGINS: list[str] = []

    # Stripe - checked at request time, an empty value is a configuration error
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PAYMENT_METHOD_TYPES: list[str] = ["card", "sepa_debit"]

    # Feature flags
    PAYMENTS_ENABLED: bool = True

    # Webhook processing
    WEBHOOK_MAX_RETRIES: int = 3
    WEBHOOK_RETRY_BASE_DELAY_SECONDS: float = 2.0
    WEBHOOK_IDEMPOTENCY_TTL_SECONDS: int = 86400  # 24 hours
    WEBHOOK_CLAIM_TTL_SECONDS: int = 300

    # Tracing
    TRACING_CONSOLE_EXPORT: bool = False

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
