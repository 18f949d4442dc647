"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Signing secrets and the database URL are validated at startup.
"""

import sys

from limits import parse_many
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Minimum signing secret length in bytes (256 bits)
MIN_SECRET_LENGTH = 32


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
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Menu SaaS Account Core"
    api_version: str = "0.1.0"
    api_description: str = "Account security and subscription lifecycle for digital menus"

    # Token signing - NO DEFAULT, validated below
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7

    # Google sign-in
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_IDS: str = ""  # Comma-separated list of valid client IDs (web + mobile)

    @property
    def valid_google_client_ids(self) -> list[str]:
        """Get list of valid Google client IDs for token validation."""
        ids = []
        if self.GOOGLE_CLIENT_ID:
            ids.append(self.GOOGLE_CLIENT_ID)
        if self.GOOGLE_CLIENT_IDS:
            for cid in self.GOOGLE_CLIENT_IDS.split(","):
                cid = cid.strip()
                if cid and cid not in ids:
                    ids.append(cid)
        return ids

    # Security check failure policy (True = treat storage errors as "not locked" /
    # "not blacklisted", False = reject the request)
    lock_check_fail_open: bool = True
    blacklist_check_fail_open: bool = True

    # Per-client throttle on the sign-in routes (limits notation)
    rate_limit_enabled: bool = True
    auth_rate_limit: str = "5 per 15 minutes"
    rate_limit_storage_uri: str = "memory://"  # redis://... when running several instances

    # Schedulers
    subscription_scheduler_enabled: bool = True
    subscription_check_interval_seconds: int = 3600
    cleanup_scheduler_enabled: bool = True
    cleanup_hour_utc: int = 2
    scheduler_lock_backend: str = "database"  # database or local

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "menu-saas-account-core"
    deployment_environment: str = "production"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start without a database or with weak signing secrets,
        since tokens minted with a guessable key are forgeable.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        for name, value in (
            ("JWT_ACCESS_SECRET", self.jwt_access_secret),
            ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
        ):
            if not value:
                errors.append(f"{name} is required but empty or missing")
            elif len(value.encode()) < MIN_SECRET_LENGTH:
                errors.append(
                    f"{name} is too short: minimum {MIN_SECRET_LENGTH} bytes, "
                    f"got {len(value.encode())}"
                )

        if self.access_token_expire_minutes <= 0:
            errors.append("ACCESS_TOKEN_EXPIRE_MINUTES must be positive")
        if self.refresh_token_expire_days <= 0:
            errors.append("REFRESH_TOKEN_EXPIRE_DAYS must be positive")
        if not 0 <= self.cleanup_hour_utc <= 23:
            errors.append("CLEANUP_HOUR_UTC must be between 0 and 23")
        if self.scheduler_lock_backend not in ("database", "local"):
            errors.append("SCHEDULER_LOCK_BACKEND must be 'database' or 'local'")
        try:
            parse_many(self.auth_rate_limit)
        except ValueError:
            errors.append(f"AUTH_RATE_LIMIT is not a valid rate limit: {self.auth_rate_limit!r}")

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

        if self.jwt_access_secret == self.jwt_refresh_secret:
            print(
                "WARNING: JWT_ACCESS_SECRET and JWT_REFRESH_SECRET should differ",
                file=sys.stderr,
            )

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
