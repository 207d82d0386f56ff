"""Token lifecycle management for provider credentials.

``TokenLifecycleManager.get_valid_token`` is the single entry point every
job uses before touching a provider. It returns either a usable ``Token``
or a ``NeedsAuth`` signal carrying the URL the tenant must visit.

Key features:
- Fast path: a stored token outside the expiry margin is returned with no
  network call
- Single-flight renewal: concurrent callers for the same
  (tenant, provider, purpose) share one refresh through a per-key lock
- Last-expiry-wins persistence: a refresh never overwrites a fresher token
  written by a concurrent refresh
- Revocation: an invalid-grant response marks the record for
  reauthorization instead of retrying
- App-only purposes re-derive their token from the client credentials
"""

import asyncio
import base64
import json
import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from tenantsync.core.config import Settings, get_settings
from tenantsync.core.exceptions import (
    NeedsAuthorizationError,
    RetryableTransientError,
    TenantSyncException,
)
from tenantsync.db.base import CredentialStore
from tenantsync.integrations.domain import (
    CredentialPurpose,
    CredentialRecord,
    GrantType,
    NeedsAuth,
    Provider,
    ProviderAuthConfig,
    Token,
    get_auth_config,
)
from tenantsync.integrations.providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)

CredentialKey = tuple[str, Provider, CredentialPurpose]


def encode_state(tenant_id: str, provider: Provider, purpose: CredentialPurpose) -> str:
    """Build the opaque OAuth ``state`` value carried through the redirect."""
    payload = {
        "tenant_id": tenant_id,
        "provider": provider.value,
        "purpose": purpose.value,
        "nonce": secrets.token_urlsafe(12),
    }
    return base64.urlsafe_b64encode(json.dumps(payload).encode()).decode().rstrip("=")


def decode_state(state: str) -> tuple[str, Provider, CredentialPurpose]:
    """Recover (tenant, provider, purpose) from an OAuth ``state`` value.

    Raises:
        ValueError: If the state is malformed.
    """
    padded = state + "=" * (-len(state) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(padded.encode()))
        return (
            payload["tenant_id"],
            Provider(payload["provider"]),
            CredentialPurpose(payload["purpose"]),
        )
    except (ValueError, KeyError, TypeError) as e:
        raise ValueError("Malformed OAuth state") from e


def _merge_scopes(*groups: Any) -> list[str]:
    merged: list[str] = []
    seen: set[str] = set()
    for group in groups:
        for scope in group or ():
            if scope.lower() not in seen:
                seen.add(scope.lower())
                merged.append(scope)
    return merged


class TokenLifecycleManager:
    """Obtains, caches, refreshes and invalidates provider access tokens."""

    def __init__(
        self,
        store: CredentialStore,
        provider_factory: Callable[[Provider], BaseProvider] | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Credential persistence.
            provider_factory: Returns the client for a provider (defaults to
                the shared clients).
            settings: Settings override.
        """
        self._store = store
        self._provider_factory = provider_factory or get_provider
        self._settings = settings or get_settings()
        self._locks: dict[CredentialKey, asyncio.Lock] = {}

    @property
    def _margin(self) -> int:
        return self._settings.TOKEN_EXPIRY_MARGIN_SECONDS

    def _lock_for(self, key: CredentialKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def forget(self, tenant_id: str, provider: Provider, purpose: CredentialPurpose) -> None:
        """Drop the renewal lock held for a credential that no longer exists."""
        self._locks.pop((tenant_id, provider, purpose), None)

    def authorization_url(
        self,
        tenant_id: str,
        provider: Provider,
        purpose: CredentialPurpose,
        scopes: list[str] | None = None,
    ) -> str:
        """URL the tenant visits to connect (or upgrade) a credential."""
        config = get_auth_config(provider, purpose)
        requested = _merge_scopes(config.default_scopes, scopes)
        client = self._provider_factory(provider)
        return client.authorization_url(
            tenant_id, purpose, requested, encode_state(tenant_id, provider, purpose)
        )

    def _needs_auth(
        self,
        tenant_id: str,
        provider: Provider,
        purpose: CredentialPurpose,
        reason: str,
        scopes: list[str] | None = None,
    ) -> NeedsAuth:
        logger.info(
            "Credential needs authorization",
            extra={
                "tenant_id": tenant_id,
                "provider": provider.value,
                "purpose": purpose.value,
                "reason": reason,
            },
        )
        return NeedsAuth(
            provider=provider,
            purpose=purpose,
            reason=reason,
            authorization_url=self.authorization_url(tenant_id, provider, purpose, scopes),
        )

    @staticmethod
    def _token(record: CredentialRecord) -> Token:
        return Token(
            access_token=record.access_token,
            provider=record.provider,
            expires_at=record.expires_at,
        )

    async def get_valid_token(
        self,
        tenant_id: str,
        provider: Provider,
        purpose: CredentialPurpose,
        required_scopes: list[str] | None = None,
    ) -> Token | NeedsAuth:
        """Return a usable token or a reauthorization signal.

        Args:
            tenant_id: Tenant the credential belongs to.
            provider: Platform the token is for.
            purpose: Which of the tenant's credentials to use.
            required_scopes: Scopes the caller needs; a record lacking any
                of them yields ``NeedsAuth`` with reason ``scope_upgrade``.

        Returns:
            A Token, or NeedsAuth when the tenant must act.

        Raises:
            RetryableTransientError: If renewal failed transiently.
            KeyError: If the provider does not support the purpose.
        """
        config = get_auth_config(provider, purpose)
        required = list(required_scopes or [])
        record = await self._store.get(tenant_id, provider, purpose)

        if record is None:
            if config.grant_type == GrantType.CLIENT_CREDENTIALS:
                return await self._renew((tenant_id, provider, purpose), config, required)
            return self._needs_auth(tenant_id, provider, purpose, "not_connected", required)

        if record.needs_reauth:
            return self._needs_auth(tenant_id, provider, purpose, "revoked", record.scopes)

        if required and not record.has_scopes(required):
            return self._needs_auth(
                tenant_id,
                provider,
                purpose,
                "scope_upgrade",
                _merge_scopes(record.scopes, required),
            )

        if not record.is_expired(self._margin):
            return self._token(record)

        return await self._renew(record.key, config, required)

    async def _renew(
        self,
        key: CredentialKey,
        config: ProviderAuthConfig,
        required: list[str],
    ) -> Token | NeedsAuth:
        tenant_id, provider, purpose = key
        async with self._lock_for(key):
            # Another caller may have renewed while we waited for the lock.
            current = await self._store.get(tenant_id, provider, purpose)
            if current is not None and current.needs_reauth:
                return self._needs_auth(tenant_id, provider, purpose, "revoked", current.scopes)
            if current is not None and not current.is_expired(self._margin):
                return self._token(current)

            if config.grant_type == GrantType.CLIENT_CREDENTIALS:
                return await self._derive_app_token(key, config)
            if current is None:
                return self._needs_auth(tenant_id, provider, purpose, "not_connected", required)
            if config.supports_long_lived_exchange:
                return await self._extend_long_lived(current)
            if not config.supports_refresh or not current.refresh_token:
                return self._needs_auth(tenant_id, provider, purpose, "expired", current.scopes)
            return await self._refresh(current, config)

    async def _refresh(self, current: CredentialRecord, config: ProviderAuthConfig) -> Token | NeedsAuth:
        client = self._provider_factory(current.provider)
        try:
            grant = await client.refresh(
                current.refresh_token or "",
                current.scopes or list(config.default_scopes),
            )
        except NeedsAuthorizationError as e:
            return await self._revoke(current, e)
        except RetryableTransientError:
            logger.warning(
                "Token refresh failed transiently",
                extra={
                    "tenant_id": current.tenant_id,
                    "provider": current.provider.value,
                    "purpose": current.purpose.value,
                },
                exc_info=True,
            )
            raise

        refreshed = CredentialRecord(
            tenant_id=current.tenant_id,
            provider=current.provider,
            purpose=current.purpose,
            access_token=grant.access_token,
            scopes=grant.scopes or current.scopes,
            refresh_token=grant.refresh_token or current.refresh_token,
            expires_at=grant.expires_at(),
            updated_at=datetime.now(UTC),
        )
        return await self._persist_refreshed(refreshed)

    async def _extend_long_lived(self, current: CredentialRecord) -> Token | NeedsAuth:
        client = self._provider_factory(current.provider)
        try:
            grant = await client.exchange_long_lived(current.access_token)
        except TenantSyncException as e:
            if current.is_expired():
                if isinstance(e, NeedsAuthorizationError):
                    return await self._revoke(current, e)
                raise
            logger.warning(
                "Long-lived token exchange failed, using the held token until it expires",
                extra={
                    "tenant_id": current.tenant_id,
                    "provider": current.provider.value,
                    "expires_at": current.expires_at.isoformat() if current.expires_at else None,
                },
                exc_info=True,
            )
            return self._token(current)

        extended = CredentialRecord(
            tenant_id=current.tenant_id,
            provider=current.provider,
            purpose=current.purpose,
            access_token=grant.access_token,
            scopes=current.scopes,
            expires_at=grant.expires_at(),
            updated_at=datetime.now(UTC),
        )
        return await self._persist_refreshed(extended)

    async def _persist_refreshed(self, refreshed: CredentialRecord) -> Token:
        written = await self._store.save_refreshed(refreshed)
        if not written:
            stored = await self._store.get(*refreshed.key)
            if stored is not None and not stored.is_expired(self._margin):
                logger.info(
                    "A fresher token was already stored, keeping it",
                    extra={"tenant_id": refreshed.tenant_id, "provider": refreshed.provider.value},
                )
                return self._token(stored)
        logger.info(
            "Token renewed",
            extra={
                "tenant_id": refreshed.tenant_id,
                "provider": refreshed.provider.value,
                "purpose": refreshed.purpose.value,
                "expires_at": refreshed.expires_at.isoformat() if refreshed.expires_at else None,
            },
        )
        return self._token(refreshed)

    async def _revoke(self, current: CredentialRecord, error: NeedsAuthorizationError) -> NeedsAuth:
        logger.warning(
            "Refresh credential rejected, tenant must reauthorize",
            extra={
                "tenant_id": current.tenant_id,
                "provider": current.provider.value,
                "purpose": current.purpose.value,
                "reason": error.reason,
            },
        )
        await self._store.mark_needs_reauth(current.tenant_id, current.provider, current.purpose)
        self.forget(*current.key)
        return self._needs_auth(
            current.tenant_id, current.provider, current.purpose, error.reason, current.scopes
        )

    async def _derive_app_token(
        self, key: CredentialKey, config: ProviderAuthConfig
    ) -> Token | NeedsAuth:
        tenant_id, provider, purpose = key
        client = self._provider_factory(provider)
        try:
            grant = await client.acquire_app_token(list(config.default_scopes))
        except NeedsAuthorizationError as e:
            return self._needs_auth(tenant_id, provider, purpose, e.reason)

        record = CredentialRecord(
            tenant_id=tenant_id,
            provider=provider,
            purpose=purpose,
            access_token=grant.access_token,
            scopes=grant.scopes or list(config.default_scopes),
            expires_at=grant.expires_at(),
            updated_at=datetime.now(UTC),
        )
        await self._store.save(record)
        logger.info(
            "App token derived",
            extra={"tenant_id": tenant_id, "provider": provider.value, "purpose": purpose.value},
        )
        return self._token(record)

    async def complete_authorization(
        self,
        tenant_id: str,
        provider: Provider,
        purpose: CredentialPurpose,
        code: str,
        scopes: list[str] | None = None,
        redirect_uri: str | None = None,
    ) -> CredentialRecord:
        """Exchange an authorization code and store the resulting credential.

        Replaces any previous record for the key, clearing a pending
        reauthorization flag.
        """
        config = get_auth_config(provider, purpose)
        requested = _merge_scopes(config.default_scopes, scopes)
        client = self._provider_factory(provider)
        grant = await client.exchange_code(
            code,
            redirect_uri or self._settings.OAUTH_REDIRECT_BASE_URL,
            requested,
        )
        record = CredentialRecord(
            tenant_id=tenant_id,
            provider=provider,
            purpose=purpose,
            access_token=grant.access_token,
            scopes=grant.scopes or requested,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at(),
            needs_reauth=False,
            updated_at=datetime.now(UTC),
        )
        saved = await self._store.save(record)
        logger.info(
            "Credential authorized",
            extra={"tenant_id": tenant_id, "provider": provider.value, "purpose": purpose.value},
        )
        return saved
