"""
Configuration management for the integration marketplace runtime.

Uses pydantic-settings for environment variable management.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # App
    APP_NAME: str = "Integration Marketplace"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Redis (persistent store + delivery queue)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Observability
    SENTRY_DSN: Optional[str] = None

    # Security (platform API tokens)
    JWT_SECRET_KEY: str = "change-me-in-production-use-strong-secret"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_MINUTES: int = 60

    # Signed tokens minted for integrations using the signed_token auth method
    INTEGRATION_TOKEN_SECRET: str = "change-me-integration-token-secret"
    INTEGRATION_TOKEN_EXPIRATION_MINUTES: int = 60

    # Webhook delivery
    WEBHOOK_SECRET: str = "change-me-webhook-signing-secret"
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0
    WEBHOOK_MAX_ATTEMPTS: int = 5
    WEBHOOK_BACKOFF_BASE: int = 2
    WEBHOOK_MAX_BACKOFF_SECONDS: Optional[int] = None
    WEBHOOK_EVENT_TTL_SECONDS: int = 7 * 24 * 60 * 60

    # Outbound calls
    RATE_LIMIT_PERMITS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    OUTBOUND_TIMEOUT_SECONDS: float = 30.0

    # Health monitoring
    HEALTH_CHECK_INTERVAL_SECONDS: int = 300
    HEALTH_CHECK_TIMEOUT_SECONDS: float = 5.0
    HEALTH_CHECK_PATH: str = "/health"
    DEGRADED_ERROR_THRESHOLD: int = 5
    UNHEALTHY_ERROR_THRESHOLD: int = 10

    # Billing
    TRIAL_PERIOD_DAYS: int = 30

    # Worker
    WORKER_MAX_JOBS: int = 10


# Global settings instance
settings = Settings()
