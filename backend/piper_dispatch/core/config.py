"""
Application configuration using Pydantic Settings.
Loads from environment variables and .env file.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Piper Dispatch"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"

    # API
    api_v1_prefix: str = "/api/v1"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Public endpoint rate limiting (slowapi)
    rate_limit_enabled: bool = True
    rate_limit_default: str = "300/minute"
    rate_limit_storage_uri: str = "memory://"

    # Redis (rate limiting, Celery broker)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "piper"
    postgres_password: str = "piper_dev"
    postgres_db: str = "piper_dispatch"
    postgres_pool_size: int = 5
    postgres_max_overflow: int = 10

    # Celery
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    # Batch delivery
    campaign_batch_size: int = Field(default=50, gt=0)
    campaign_batch_delay_ms: int = Field(default=1000, ge=0)
    delivery_timeout_seconds: float = Field(default=30.0, gt=0)
    send_rate_limit_per_second: int = Field(default=0, ge=0)  # 0 disables the limiter

    # Periodic jobs
    scheduler_tick_seconds: int = Field(default=300, gt=0)
    stats_refresh_interval_seconds: int = Field(default=3600, gt=0)
    retention_days: int = Field(default=30, gt=0)

    # Tracking
    tracking_base_url: str = "http://localhost:8000/api/v1/track"
    tracking_token_secret: str = ""
    tracking_require_signature: bool = False

    # Outbound transport: "smtp" or "mail_engine"
    mail_provider: str = "smtp"
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from_email: str = "newsletter@piper.dev"
    mail_from_name: str = "Piper Newsletter"
    mail_reply_to: str = ""
    mail_engine_url: str = "http://localhost:8025"
    mail_engine_api_key: str = ""

    @property
    def redis_url(self) -> str:
        """Build Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def postgres_url(self) -> str:
        """Build PostgreSQL async connection URL."""
        return f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"

    def validate_production_settings(self) -> None:
        """
        Validate critical settings for production deployment.
        Raises ValueError if any critical settings are using default/insecure values.
        """
        if self.environment == "production":
            errors = []

            if not self.postgres_password or self.postgres_password == "piper_dev":
                errors.append("POSTGRES_PASSWORD must be set to a secure value in production")

            if self.tracking_require_signature and not self.tracking_token_secret:
                errors.append("TRACKING_TOKEN_SECRET is required when TRACKING_REQUIRE_SIGNATURE is enabled")

            if self.tracking_base_url.startswith("http://localhost"):
                errors.append("TRACKING_BASE_URL must point at the public tracking host in production")

            if errors:
                raise ValueError(
                    "Production configuration validation failed:\n" +
                    "\n".join(f"  - {error}" for error in errors)
                )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
