"""Engine configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. This keeps the client engine and
the reference ledger reading the same typed, documented values.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a local .env file)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Server ledger (what the client talks to)
    # ==========================================================================
    api_base_url: str = "http://localhost:3001"
    request_timeout_seconds: float = 15.0

    # ==========================================================================
    # Local Sale Store
    # ==========================================================================
    local_database_url: str = "sqlite:///./data/offline_sales.db"

    # Reference ledger database (only used by salesync.main)
    ledger_database_url: str = "sqlite:///./data/ledger.db"

    # Security (reference ledger token signing)
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 240  # 4 hours

    # ==========================================================================
    # Sync behaviour
    # ==========================================================================
    sync_poll_interval_seconds: float = 300.0
    currency_epsilon: Decimal = Decimal("0.01")
    duplicate_error_code: str = "DUPLICATE_SALE"
    # Rejections the ledger never stores; reconciliation must not read them as "removed"
    local_only_error_codes: List[str] = ["INVALID_DATA", "NOT_FOUND", "SYSTEM_ERROR"]

    # Bounded backoff, only active behind FEATURE_TRANSPORT_BACKOFF
    transport_retry_attempts: int = 3
    transport_backoff_base_seconds: float = 1.0
    transport_backoff_max_seconds: float = 30.0

    # CONFIRMED offline sales stay visible to reconciliation this long
    offline_status_window_hours: int = 24

    # Reference ledger rate limiting (slowapi)
    rate_limit_enabled: bool = True
    sync_rate_limit: str = "60/minute"

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, v: str) -> str:
        if v == "change-me-in-production":
            import warnings
            warnings.warn(
                "Using default SECRET_KEY is insecure! Set SECRET_KEY environment variable.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator("transport_retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("transport_retry_attempts must be at least 1")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
