"""Tests for TokenLifecycleManager."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from tenantsync.core.exceptions import InvalidGrantError, RetryableTransientError
from tenantsync.db.memory import InMemoryCredentialStore
from tenantsync.integrations.domain import (
    CredentialPurpose,
    CredentialRecord,
    NeedsAuth,
    Provider,
    Token,
    TokenGrant,
)
from tenantsync.integrations.oauth import TokenLifecycleManager, decode_state, encode_state

TENANT = "tenant-1"


@pytest.fixture
def store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def manager(store: InMemoryCredentialStore, provider_factory: Any) -> TokenLifecycleManager:
    return TokenLifecycleManager(store, provider_factory=provider_factory)


def _linkedin(expires_in: timedelta, **kwargs: Any) -> CredentialRecord:
    return CredentialRecord(
        tenant_id=TENANT,
        provider=Provider.LINKEDIN,
        purpose=CredentialPurpose.PRIMARY_AUTH,
        access_token=kwargs.pop("access_token", "cached"),
        scopes=kwargs.pop("scopes", ["r_ads", "rw_ads", "r_organization_social"]),
        refresh_token=kwargs.pop("refresh_token", "refresh-1"),
        expires_at=datetime.now(UTC) + expires_in,
        **kwargs,
    )


class TestCachedToken:
    """Fast path: a valid stored token is returned without a network call."""

    @pytest.mark.asyncio
    async def test_cache_hit_makes_no_refresh_call(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore, ad_provider: Any
    ) -> None:
        """Test that a token outside the expiry margin is returned as-is."""
        await store.save(_linkedin(timedelta(minutes=30)))

        token = await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)

        assert isinstance(token, Token)
        assert token.access_token == "cached"
        ad_provider.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_token_inside_margin_is_refreshed(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore, ad_provider: Any
    ) -> None:
        """Test that a token expiring within the margin counts as expired."""
        await store.save(_linkedin(timedelta(seconds=30)))
        ad_provider.refresh.return_value = TokenGrant(
            access_token="fresh", expires_in=3600, refresh_token="refresh-2"
        )

        token = await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)

        assert isinstance(token, Token)
        assert token.access_token == "fresh"
        stored = await store.get(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)
        assert stored is not None
        assert stored.refresh_token == "refresh-2"


class TestSingleFlightRefresh:
    """Concurrent callers share one refresh."""

    @pytest.mark.asyncio
    async def test_concurrent_callers_trigger_one_refresh(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore, ad_provider: Any
    ) -> None:
        """Test that ten concurrent requests for an expired token refresh once."""
        await store.save(_linkedin(timedelta(seconds=-5)))

        async def slow_refresh(refresh_token: str, scopes: list[str]) -> TokenGrant:
            await asyncio.sleep(0.01)
            return TokenGrant(access_token="fresh", expires_in=3600)

        ad_provider.refresh.side_effect = slow_refresh

        tokens = await asyncio.gather(
            *(
                manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)
                for _ in range(10)
            )
        )

        assert ad_provider.refresh.await_count == 1
        assert all(isinstance(t, Token) and t.access_token == "fresh" for t in tokens)

    @pytest.mark.asyncio
    async def test_fresher_stored_token_wins(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore, ad_provider: Any
    ) -> None:
        """Test that a slower refresh returns the token another process stored."""
        await store.save(_linkedin(timedelta(seconds=-5)))

        async def refresh_losing_race(refresh_token: str, scopes: list[str]) -> TokenGrant:
            await store.save(_linkedin(timedelta(hours=2), access_token="other-process"))
            return TokenGrant(access_token="late", expires_in=3600)

        ad_provider.refresh.side_effect = refresh_losing_race

        token = await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)

        assert isinstance(token, Token)
        assert token.access_token == "other-process"


class TestNeedsAuth:
    """Conditions that need the tenant to act."""

    @pytest.mark.asyncio
    async def test_not_connected(self, manager: TokenLifecycleManager) -> None:
        result = await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)
        assert isinstance(result, NeedsAuth)
        assert result.reason == "not_connected"
        assert result.authorization_url is not None
        assert "tenant=tenant-1" in result.authorization_url

    @pytest.mark.asyncio
    async def test_invalid_grant_marks_record_revoked(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore, ad_provider: Any
    ) -> None:
        """Test that an invalid grant is not retried and flags the record."""
        await store.save(_linkedin(timedelta(seconds=-5)))
        ad_provider.refresh.side_effect = InvalidGrantError("linkedin")

        result = await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)

        assert isinstance(result, NeedsAuth)
        assert result.reason == "invalid_grant"
        stored = await store.get(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)
        assert stored is not None
        assert stored.needs_reauth is True

        again = await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)
        assert isinstance(again, NeedsAuth)
        assert again.reason == "revoked"
        assert ad_provider.refresh.await_count == 1

    @pytest.mark.asyncio
    async def test_revoked_credential_releases_its_renewal_lock(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore, ad_provider: Any
    ) -> None:
        await store.save(_linkedin(timedelta(seconds=-5)))
        ad_provider.refresh.side_effect = InvalidGrantError("linkedin")

        await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)

        assert manager._locks == {}

    @pytest.mark.asyncio
    async def test_missing_scope_requests_upgrade(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore
    ) -> None:
        """Test that a record lacking a required scope asks for an upgrade."""
        await store.save(_linkedin(timedelta(hours=1), scopes=["r_ads"]))

        result = await manager.get_valid_token(
            TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH, ["rw_ads"]
        )

        assert isinstance(result, NeedsAuth)
        assert result.reason == "scope_upgrade"
        assert "rw_ads" in (result.authorization_url or "")

    @pytest.mark.asyncio
    async def test_no_refresh_token_needs_auth(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore
    ) -> None:
        await store.save(_linkedin(timedelta(seconds=-5), refresh_token=None))
        result = await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)
        assert isinstance(result, NeedsAuth)
        assert result.reason == "expired"

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_propagates(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore, ad_provider: Any
    ) -> None:
        """Test that a transient failure is retryable, not a reauthorization."""
        await store.save(_linkedin(timedelta(seconds=-5)))
        ad_provider.refresh.side_effect = RetryableTransientError("linkedin")

        with pytest.raises(RetryableTransientError):
            await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)

        stored = await store.get(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)
        assert stored is not None
        assert stored.needs_reauth is False


class TestAppTokens:
    """Client-credential purposes re-derive their token."""

    @pytest.mark.asyncio
    async def test_app_token_derived_without_stored_record(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore, mail_provider: Any
    ) -> None:
        token = await manager.get_valid_token(
            TENANT, Provider.MICROSOFT, CredentialPurpose.SECONDARY_INGESTION, ["Mail.Read"]
        )

        assert isinstance(token, Token)
        assert token.access_token == "app-token"
        stored = await store.get(TENANT, Provider.MICROSOFT, CredentialPurpose.SECONDARY_INGESTION)
        assert stored is not None
        assert stored.has_scopes(["Mail.Read", "Mail.Send"])

    @pytest.mark.asyncio
    async def test_expired_app_token_is_rederived(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore, mail_provider: Any
    ) -> None:
        await manager.get_valid_token(TENANT, Provider.MICROSOFT, CredentialPurpose.SECONDARY_INGESTION)
        store.records[
            (TENANT, Provider.MICROSOFT, CredentialPurpose.SECONDARY_INGESTION)
        ].expires_at = datetime.now(UTC) - timedelta(minutes=1)

        await manager.get_valid_token(TENANT, Provider.MICROSOFT, CredentialPurpose.SECONDARY_INGESTION)

        assert mail_provider.acquire_app_token.await_count == 2


class TestLongLivedExchange:
    """Providers without refresh tokens extend by exchanging the held token."""

    @pytest.mark.asyncio
    async def test_meta_token_is_extended(self, store: InMemoryCredentialStore) -> None:
        meta = AsyncMock()
        meta.exchange_long_lived.return_value = TokenGrant(access_token="long", expires_in=5_184_000)
        manager = TokenLifecycleManager(store, provider_factory=lambda provider: meta)
        await store.save(
            CredentialRecord(
                tenant_id=TENANT,
                provider=Provider.META,
                purpose=CredentialPurpose.PRIMARY_AUTH,
                access_token="short",
                expires_at=datetime.now(UTC) + timedelta(seconds=10),
            )
        )

        token = await manager.get_valid_token(TENANT, Provider.META, CredentialPurpose.PRIMARY_AUTH)

        assert isinstance(token, Token)
        assert token.access_token == "long"
        meta.exchange_long_lived.assert_awaited_once_with("short")

    @pytest.mark.asyncio
    async def test_failed_exchange_keeps_unexpired_token(self, store: InMemoryCredentialStore) -> None:
        """Test that the held token is used while it is still valid."""
        meta = AsyncMock()
        meta.exchange_long_lived.side_effect = RetryableTransientError("meta")
        manager = TokenLifecycleManager(store, provider_factory=lambda provider: meta)
        await store.save(
            CredentialRecord(
                tenant_id=TENANT,
                provider=Provider.META,
                purpose=CredentialPurpose.PRIMARY_AUTH,
                access_token="short",
                expires_at=datetime.now(UTC) + timedelta(seconds=10),
            )
        )

        token = await manager.get_valid_token(TENANT, Provider.META, CredentialPurpose.PRIMARY_AUTH)

        assert isinstance(token, Token)
        assert token.access_token == "short"

    @pytest.mark.asyncio
    async def test_rejected_exchange_keeps_unexpired_token(self, store: InMemoryCredentialStore) -> None:
        """Test that a still-valid token is not revoked when the exchange is refused."""
        meta = AsyncMock()
        meta.exchange_long_lived.side_effect = InvalidGrantError("meta")
        manager = TokenLifecycleManager(store, provider_factory=lambda provider: meta)
        await store.save(
            CredentialRecord(
                tenant_id=TENANT,
                provider=Provider.META,
                purpose=CredentialPurpose.PRIMARY_AUTH,
                access_token="short",
                expires_at=datetime.now(UTC) + timedelta(seconds=30),
            )
        )

        token = await manager.get_valid_token(TENANT, Provider.META, CredentialPurpose.PRIMARY_AUTH)

        assert isinstance(token, Token)
        assert token.access_token == "short"
        stored = await store.get(TENANT, Provider.META, CredentialPurpose.PRIMARY_AUTH)
        assert stored is not None
        assert stored.needs_reauth is False

    @pytest.mark.asyncio
    async def test_rejected_exchange_of_expired_token_needs_auth(
        self, store: InMemoryCredentialStore
    ) -> None:
        meta = AsyncMock()
        meta.exchange_long_lived.side_effect = InvalidGrantError("meta")
        manager = TokenLifecycleManager(store, provider_factory=lambda provider: meta)
        await store.save(
            CredentialRecord(
                tenant_id=TENANT,
                provider=Provider.META,
                purpose=CredentialPurpose.PRIMARY_AUTH,
                access_token="short",
                expires_at=datetime.now(UTC) - timedelta(seconds=5),
            )
        )

        result = await manager.get_valid_token(TENANT, Provider.META, CredentialPurpose.PRIMARY_AUTH)

        assert isinstance(result, NeedsAuth)
        assert result.reason == "invalid_grant"



class TestAuthorization:
    """Code exchange and OAuth state."""

    @pytest.mark.asyncio
    async def test_complete_authorization_clears_reauth(
        self, manager: TokenLifecycleManager, store: InMemoryCredentialStore
    ) -> None:
        await store.save(_linkedin(timedelta(hours=1), needs_reauth=True))

        record = await manager.complete_authorization(
            TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH, "code-123"
        )

        assert record.access_token == "token-for-code-123"
        assert record.needs_reauth is False
        token = await manager.get_valid_token(TENANT, Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH)
        assert isinstance(token, Token)

    def test_state_round_trip(self) -> None:
        state = encode_state(TENANT, Provider.META, CredentialPurpose.PRIMARY_AUTH)
        assert decode_state(state) == (TENANT, Provider.META, CredentialPurpose.PRIMARY_AUTH)

    def test_malformed_state(self) -> None:
        with pytest.raises(ValueError, match="Malformed OAuth state"):
            decode_state("not-a-state")
