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
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "IAP Entitlements API"
    api_version: str = "0.1.0"
    api_description: str = "In-app purchase verification and entitlement service"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "iap-entitlements-api"

    # Apple App Store Server API
    apple_issuer_id: str = ""
    apple_key_id: str = ""
    apple_private_key: str = ""  # .p8 contents, literal \n accepted
    apple_bundle_id: str = ""
    apple_environment: str = "production"  # production or sandbox
    apple_jwt_ttl_seconds: int = 300
    apple_request_timeout_seconds: float = 30.0

    # Subscription re-sync
    sync_lookback_days: int = 3
    sync_batch_size: int = 200

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

        # Apple caps server API tokens well below an hour; keep them short-lived
        if not 300 <= self.apple_jwt_ttl_seconds <= 600:
            errors.append(
                f"APPLE_JWT_TTL_SECONDS must be between 300 and 600, got: {self.apple_jwt_ttl_seconds}"
            )

        if self.apple_environment.lower() not in ("production", "sandbox"):
            errors.append(
                f"APPLE_ENVIRONMENT must be 'production' or 'sandbox', got: {self.apple_environment}"
            )

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
    def apple_configured(self) -> bool:
        """True when every credential needed to sign Apple API tokens is present."""
        return bool(self.apple_issuer_id and self.apple_key_id and self.apple_private_key)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
