"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import re
import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dmtobuy.services.token_cipher import TokenCipher, parse_keys

GRAPH_VERSION_PATTERN = re.compile(r"^v\d+\.\d+$")


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "DM-to-Buy Automation API"
    api_version: str = "0.1.0"
    api_description: str = "Automated replies for storefront DMs and comments"

    # Application base URL - used for short links (/{link_id})
    app_base_url: str = ""

    # Security
    admin_api_key: str = ""  # X-API-Key for merchant admin routes

    # Meta Graph API (required)
    meta_app_id: str = ""
    meta_app_secret: str = ""
    meta_api_version: str = ""
    webhook_verify_token: str = ""

    # Instagram Login variant
    meta_instagram_app_secret: str = ""
    meta_instagram_api_version: str = "v24.0"
    meta_subscribed_fields: str = "messages"

    # Commerce platform
    commerce_webhook_secret: str = ""
    commerce_api_version: str = "2025-01"

    # Classifier / generation
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    classifier_confidence_threshold: float = 0.70

    # External calls
    external_call_timeout_seconds: float = 8.0
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0

    # Credentials
    token_refresh_window_days: int = 7
    token_encryption_keys: str = ""  # Fernet keys, newest first, comma-separated

    # Webhook queue
    queue_batch_size: int = 50
    queue_max_attempts: int = 3
    queue_retry_base_seconds: int = 30
    queue_visibility_timeout_seconds: int = 300
    worker_concurrency: int = 10

    # Compliance
    clarifying_max_per_day: int = 2
    comment_max_age_days: int = 7
    dm_window_hours: int = 24

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "dmtobuy-api"

    # Observability - Sampling
    trace_sample_rate: float = 1.0  # 1.0 = 100% sampling

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
        A missing app id or API version would otherwise only surface
        when the first webhook tries to dispatch a reply.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.meta_app_id:
            errors.append("META_APP_ID is required but empty or missing")
        if not self.meta_app_secret:
            errors.append("META_APP_SECRET is required but empty or missing")

        if not self.meta_api_version:
            errors.append("META_API_VERSION is required but empty or missing")
        elif not GRAPH_VERSION_PATTERN.match(self.meta_api_version):
            errors.append(
                f"META_API_VERSION must look like v21.0, got: {self.meta_api_version}"
            )

        if not self.app_base_url:
            errors.append("APP_BASE_URL is required but empty or missing")
        elif not self.app_base_url.startswith(("http://", "https://")):
            errors.append(f"APP_BASE_URL must be an http(s) URL, got: {self.app_base_url}")

        if not self.webhook_verify_token:
            errors.append("WEBHOOK_VERIFY_TOKEN is required but empty or missing")
        if not self.openai_api_key:
            errors.append("OPENAI_API_KEY is required but empty or missing")

        if not self.token_encryption_keys:
            errors.append("TOKEN_ENCRYPTION_KEYS is required but empty or missing")
        else:
            try:
                TokenCipher(self.encryption_keys)
            except ValueError:
                errors.append("TOKEN_ENCRYPTION_KEYS must be url-safe base64 Fernet keys")

        if not 0.0 <= self.classifier_confidence_threshold <= 1.0:
            errors.append(
                "CLASSIFIER_CONFIDENCE_THRESHOLD must be between 0 and 1, "
                f"got: {self.classifier_confidence_threshold}"
            )

        # If we have errors, fail immediately with clear messaging
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
    def public_base_url(self) -> str:
        """Application base URL without a trailing slash."""
        return self.app_base_url.rstrip("/")

    @property
    def encryption_keys(self) -> list[str]:
        """Token encryption keys, the one used for new writes first."""
        return parse_keys(self.token_encryption_keys)

    @property
    def subscribed_fields(self) -> list[str]:
        """Webhook fields requested when subscribing a connected account."""
        return [f.strip() for f in self.meta_subscribed_fields.split(",") if f.strip()]

    @property
    def webhook_app_secrets(self) -> list[str]:
        """App secrets accepted for X-Hub-Signature-256 verification."""
        secrets = [self.meta_app_secret]
        if self.meta_instagram_app_secret:
            secrets.append(self.meta_instagram_app_secret)
        return secrets


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
