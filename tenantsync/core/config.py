"""Configuration management using Pydantic Settings."""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Supabase Configuration
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")

    # Application Settings
    APP_ENV: Literal["development", "staging", "production"] = "development"
    APP_NAME: str = "tenantsync"
    OAUTH_REDIRECT_BASE_URL: str = "http://localhost:3000/integrations/callback"

    # Logging
    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"

    # Scheduler
    ENABLE_SCHEDULER: bool = True
    DEFAULT_SYNC_CADENCE: str = "EVERY_HOUR"

    # Microsoft Graph (mail ingestion + outbound replies)
    MICROSOFT_CLIENT_ID: str = ""
    MICROSOFT_CLIENT_SECRET: SecretStr = SecretStr("")
    MICROSOFT_DIRECTORY_ID: str = "common"
    MICROSOFT_GRAPH_URL: str = "https://graph.microsoft.com/v1.0"
    MICROSOFT_LOGIN_URL: str = "https://login.microsoftonline.com"

    # Google Ads
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: SecretStr = SecretStr("")
    GOOGLE_ADS_DEVELOPER_TOKEN: SecretStr = SecretStr("")
    GOOGLE_ADS_LOGIN_CUSTOMER_ID: str = ""
    GOOGLE_ADS_API_VERSION: str = "v17"

    # LinkedIn Marketing
    LINKEDIN_CLIENT_ID: str = ""
    LINKEDIN_CLIENT_SECRET: SecretStr = SecretStr("")
    LINKEDIN_API_VERSION: str = "202405"

    # Meta Marketing
    META_APP_ID: str = ""
    META_APP_SECRET: SecretStr = SecretStr("")
    META_GRAPH_VERSION: str = "v19.0"

    # Token lifecycle
    TOKEN_EXPIRY_MARGIN_SECONDS: int = 60

    # Incremental sync
    SYNC_LOOKBACK_DAYS: int = 7
    SYNC_PAGE_SIZE: int = 50
    SYNC_MAX_PAGES_PER_RUN: int = 20

    # Lead classification defaults (used when a tenant has no rules of its own)
    LEAD_DEFAULT_KEYWORDS: list[str] = ["inquiry", "interested", "quote", "sales", "meeting"]
    LEAD_DEFAULT_FOLDERS: list[str] = ["inbox", "junkemail"]

    # Provider call limits
    PROVIDER_MAX_CONCURRENT: int = 10
    PROVIDER_MIN_INTERVAL_MS: int = 100
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_MAX_RETRIES: int = 2

    # Outbound delivery
    OUTBOUND_RESOLVE_ATTEMPTS: int = 3
    OUTBOUND_RESOLVE_DELAY_SECONDS: float = 3.0
    OUTBOUND_RATE_LIMIT_WAIT_SECONDS: float = 2.0
    OUTBOUND_MAX_RATE_LIMIT_WAIT_SECONDS: float = 30.0
    OUTBOUND_BLOCKED_SENDER_DOMAINS: list[str] = ["gmail.com"]

    @field_validator("SUPABASE_URL")
    @classmethod
    def validate_supabase_url(cls, v: str) -> str:
        """Validate that SUPABASE_URL is a valid URL."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")
        return v.rstrip("/") if v else v

    @field_validator("LEAD_DEFAULT_KEYWORDS", "OUTBOUND_BLOCKED_SENDER_DOMAINS")
    @classmethod
    def normalize_word_list(cls, v: list[str]) -> list[str]:
        """Lower-case and de-blank configured word lists."""
        return [item.strip().lower() for item in v if item and item.strip()]

    @field_validator("TOKEN_EXPIRY_MARGIN_SECONDS", "SYNC_LOOKBACK_DAYS", "SYNC_PAGE_SIZE")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Reject non-positive windows and sizes."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.APP_ENV == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.APP_ENV == "production"

    @property
    def is_configured(self) -> bool:
        """Check if the persistence layer is configured."""
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value())

    @property
    def provider_min_interval_seconds(self) -> float:
        """Minimum spacing between two provider calls, in seconds."""
        return self.PROVIDER_MIN_INTERVAL_MS / 1000.0


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Application settings instance.
    """
    return Settings()


settings = get_settings()
