"""Tests for configuration settings."""

import pytest
from pydantic import ValidationError

from tenantsync.core.config import Settings


def test_sync_defaults() -> None:
    """Test the incremental sync defaults."""
    settings = Settings()
    assert settings.SYNC_LOOKBACK_DAYS == 7
    assert settings.TOKEN_EXPIRY_MARGIN_SECONDS == 60
    assert settings.LEAD_DEFAULT_FOLDERS == ["inbox", "junkemail"]
    assert settings.provider_min_interval_seconds == pytest.approx(0.1)


def test_word_lists_are_normalized() -> None:
    """Test that keyword and domain lists are lower-cased and de-blanked."""
    settings = Settings(LEAD_DEFAULT_KEYWORDS=[" Quote ", "", "SALES"])
    assert settings.LEAD_DEFAULT_KEYWORDS == ["quote", "sales"]


def test_rejects_non_positive_lookback() -> None:
    """Test that a zero lookback window is rejected."""
    with pytest.raises(ValidationError):
        Settings(SYNC_LOOKBACK_DAYS=0)


def test_supabase_url_validation() -> None:
    """Test that SUPABASE_URL must be an http(s) URL."""
    with pytest.raises(ValidationError):
        Settings(SUPABASE_URL="db.example.com")
    assert Settings(SUPABASE_URL="https://x.supabase.co/").SUPABASE_URL == "https://x.supabase.co"


def test_is_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test is_configured requires both URL and key."""
    monkeypatch.setenv("SUPABASE_URL", "https://test.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "")
    assert Settings().is_configured is False

    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")
    assert Settings().is_configured is True
