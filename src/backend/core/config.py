"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables (or a local .env file).
Settings are read at the composition root only; gate components receive their
tuning values as explicit constructor arguments.
"""

from functools import lru_cache
from typing import Any, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "PollGuard"
    APP_ENV: str = "development"
    DEBUG: bool = False
    SECRET_KEY: str = ""  # Required - loaded from environment

    # Identity hashing pepper; falls back to SECRET_KEY when unset
    IDENTITY_HASH_KEY: str | None = None

    @field_validator("SECRET_KEY")
    @classmethod
    def validate_required_secrets(cls, v: str, info: Any) -> str:
        """Validate that required secrets are set."""
        if not v:
            raise ValueError(f"{info.field_name} must be set in environment")
        return v

    @property
    def identity_hash_key(self) -> str:
        """Key used by the identity hasher."""
        return self.IDENTITY_HASH_KEY or self.SECRET_KEY

    # Storage backend for rate limits, challenges, attempt history and audit events
    GATE_STORE_BACKEND: Literal["memory", "azure"] = "memory"

    # Azure Storage (Tables for rate limits, challenges, attempt history)
    AZURE_STORAGE_TABLE_ENDPOINT: str | None = None
    AZURE_STORAGE_CONNECTION_STRING: str | None = None  # For local dev only

    # Azure Cosmos DB (security audit events)
    AZURE_COSMOS_ENDPOINT: str | None = None
    AZURE_COSMOS_CONNECTION_STRING: str | None = None
    AZURE_COSMOS_DATABASE: str = "pollguard"
    AZURE_COSMOS_DISABLE_SSL: bool = False

    # CORS - stored as comma-separated string to avoid pydantic-settings JSON parsing issues
    CORS_ORIGINS: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        import json

        try:
            return json.loads(self.CORS_ORIGINS)
        except json.JSONDecodeError:
            return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Decision thresholds (0-100 risk scale)
    RISK_CHALLENGE_THRESHOLD: int = 50
    RISK_BLOCK_THRESHOLD: int = 85

    # Rate limiting
    RATE_LIMIT_WINDOW_SECONDS: int = 3600
    RATE_LIMIT_VOTE_PER_WINDOW: int = 10
    RATE_LIMIT_DEFAULT_PER_WINDOW: int = 100

    # Per-step budget inside a single gate decision
    GATE_STEP_TIMEOUT_SECONDS: float = 0.25

    # Fraud signal tuning
    FRAUD_FINGERPRINT_WINDOW_SECONDS: int = 900
    FRAUD_FINGERPRINT_SESSION_ALLOWANCE: int = 2
    FRAUD_VELOCITY_WINDOW_SECONDS: int = 600
    FRAUD_VELOCITY_POLL_ALLOWANCE: int = 3

    @property
    def attempt_history_retention_seconds(self) -> int:
        """Attempt observations older than the widest fraud window are never read."""
        return max(self.FRAUD_FINGERPRINT_WINDOW_SECONDS, self.FRAUD_VELOCITY_WINDOW_SECONDS)

    # Audit logger
    AUDIT_QUEUE_MAX_SIZE: int = 1000
    AUDIT_MAX_RETRIES: int = 3
    AUDIT_RETRY_BASE_DELAY_SECONDS: float = 0.5


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
