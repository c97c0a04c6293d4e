"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Studio Billing API"
    api_version: str = "0.1.0"
    api_description: str = "Credit wallet and generation task lifecycle for the studio"

    # Security
    internal_api_key: str = ""  # Shared key for the web layer calling this service
    provider_callback_secret: str = ""  # Bearer token the provider sends on callbacks

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "studio-billing-api"

    # Generation provider
    provider_base_url: str = "https://api.kie.ai/api/v1"
    provider_api_key: str = ""
    provider_timeout_seconds: float = 30.0
    public_base_url: str = "http://localhost:8000"  # Used to build callback URLs

    # Retry policy
    max_resource_retries: int = 3
    max_generation_retries: int = 1
    resource_retry_base_delay: float = 30.0  # seconds, doubled per attempt
    generation_retry_delay: float = 5.0
    # Past the longest retry delay by this much, a retrying task counts as lost
    stale_retry_grace_seconds: float = 300.0

    # System config cache
    settings_cache_ttl_seconds: float = 60.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.max_resource_retries < 0 or self.max_generation_retries < 0:
            errors.append("Retry limits must be non-negative")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def provider_callback_url(self) -> str:
        """Public URL the provider pushes status notifications to."""
        return f"{self.public_base_url.rstrip('/')}/v1/callbacks/provider"


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
