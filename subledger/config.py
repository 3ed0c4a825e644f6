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
    database_command_timeout_seconds: float = 30.0  # Per statement and per commit
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Subledger API"
    api_version: str = "0.1.0"
    api_description: str = "Subscription lifecycle and store reconciliation service"
    cors_origins: str = "*"  # Comma-separated allowed origins

    # Admin endpoints (reconciliation triggers, operator queue)
    admin_api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "subledger-api"
    deployment_environment: str = "production"

    # Web store - Stripe
    stripe_api_key: str = ""  # sk_test_... or sk_live_...
    stripe_webhook_secret: str = ""  # whsec_...

    # Mobile store - Google Play
    google_play_service_account: str = ""  # Path to JSON file or raw JSON
    google_play_package_name: str = ""  # e.g., "com.example.listings"
    google_pubsub_audience: str = ""  # Expected OIDC audience of Pub/Sub push tokens
    google_pubsub_service_account_email: str = ""  # Expected signer of push tokens

    # App store - Apple
    apple_key_id: str = ""
    apple_issuer_id: str = ""
    apple_private_key: str = ""  # .p8 contents, raw or base64
    apple_bundle_id: str = ""
    apple_environment: str = "production"  # production or sandbox
    apple_root_certificate_paths: str = ""  # Comma-separated DER/PEM files
    apple_require_signature_verification: bool = True

    # Store API calls
    store_api_timeout_seconds: float = 15.0
    store_api_max_retries: int = 3
    store_api_backoff_base_seconds: float = 0.5
    store_api_backoff_max_seconds: float = 8.0

    # Subscription policy
    default_grace_period_days: int = 16

    # Workers
    workers_enabled: bool = True
    reconciliation_interval_seconds: int = 86400  # daily
    reconciliation_batch_size: int = 500
    expiration_sweep_interval_seconds: int = 21600  # every 6 hours
    expiration_sweep_batch_size: int = 1000

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

        if self.reconciliation_interval_seconds <= 0:
            errors.append("RECONCILIATION_INTERVAL_SECONDS must be positive")
        if self.expiration_sweep_interval_seconds <= 0:
            errors.append("EXPIRATION_SWEEP_INTERVAL_SECONDS must be positive")
        if self.database_command_timeout_seconds <= 0:
            errors.append("DATABASE_COMMAND_TIMEOUT_SECONDS must be positive")
        if self.store_api_timeout_seconds <= 0:
            errors.append("STORE_API_TIMEOUT_SECONDS must be positive")
        if self.store_api_max_retries < 0:
            errors.append("STORE_API_MAX_RETRIES must not be negative")

        if self.apple_environment.lower() not in ("production", "sandbox"):
            errors.append("APPLE_ENVIRONMENT must be 'production' or 'sandbox'")

        if (
            self.apple_bundle_id
            and self.apple_require_signature_verification
            and not self.apple_root_certificates
        ):
            errors.append(
                "APPLE_ROOT_CERTIFICATE_PATHS is required when App Store "
                "signature verification is enabled"
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
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def apple_root_certificates(self) -> list[str]:
        """Get configured Apple root certificate file paths."""
        return [p.strip() for p in self.apple_root_certificate_paths.split(",") if p.strip()]

    @property
    def google_play_configured(self) -> bool:
        return bool(self.google_play_service_account and self.google_play_package_name)

    @property
    def app_store_configured(self) -> bool:
        return bool(
            self.apple_key_id
            and self.apple_issuer_id
            and self.apple_private_key
            and self.apple_bundle_id
        )

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_api_key and self.stripe_webhook_secret)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
