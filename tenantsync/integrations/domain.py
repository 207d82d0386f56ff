"""Domain models for provider credentials."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any


class Provider(str, Enum):
    """Supported third-party platforms."""

    MICROSOFT = "microsoft"
    GOOGLE_ADS = "google_ads"
    LINKEDIN = "linkedin"
    META = "meta"


class CredentialPurpose(str, Enum):
    """What a credential is used for.

    A tenant can hold several credentials for the same provider, e.g. a
    user-delegated sign-in and an app-only token used for mail ingestion.
    """

    PRIMARY_AUTH = "primary-auth"
    SECONDARY_INGESTION = "secondary-ingestion"


class GrantType(str, Enum):
    """How a provider issues tokens for a purpose."""

    AUTHORIZATION_CODE = "authorization_code"
    CLIENT_CREDENTIALS = "client_credentials"


def parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class CredentialRecord:
    """Persisted credential for one (tenant, provider, purpose)."""

    tenant_id: str
    provider: Provider
    purpose: CredentialPurpose
    access_token: str
    scopes: list[str] = field(default_factory=list)
    refresh_token: str | None = None
    expires_at: datetime | None = None
    needs_reauth: bool = False
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[str, Provider, CredentialPurpose]:
        return (self.tenant_id, self.provider, self.purpose)

    def is_expired(self, margin_seconds: int = 0, now: datetime | None = None) -> bool:
        """Whether the access token is expired, or will be within the margin.

        A record without an expiry is treated as non-expiring.
        """
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        return self.expires_at <= now + timedelta(seconds=margin_seconds)

    def has_scopes(self, required: list[str] | tuple[str, ...]) -> bool:
        """Whether every required scope was granted (case-insensitive)."""
        granted = {s.lower() for s in self.scopes}
        return all(s.lower() in granted for s in required)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "provider": self.provider.value,
            "purpose": self.purpose.value,
            "access_token": self.access_token,
            "scopes": list(self.scopes),
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "needs_reauth": self.needs_reauth,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CredentialRecord":
        return cls(
            tenant_id=data["tenant_id"],
            provider=Provider(data["provider"]),
            purpose=CredentialPurpose(data["purpose"]),
            access_token=data["access_token"],
            scopes=list(data.get("scopes") or []),
            refresh_token=data.get("refresh_token"),
            expires_at=parse_datetime(data.get("expires_at")),
            needs_reauth=bool(data.get("needs_reauth", False)),
            updated_at=parse_datetime(data.get("updated_at")),
        )


@dataclass
class TokenGrant:
    """Result of a token endpoint call (code exchange, refresh, long-lived exchange)."""

    access_token: str
    expires_in: int | None = None
    refresh_token: str | None = None
    scopes: list[str] | None = None

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        if self.expires_in is None:
            return None
        return (now or datetime.now(UTC)) + timedelta(seconds=self.expires_in)


@dataclass(frozen=True)
class Token:
    """A currently-valid bearer token."""

    access_token: str
    provider: Provider
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return f"Token(provider={self.provider.value!r}, expires_at={self.expires_at!r})"


@dataclass(frozen=True)
class NeedsAuth:
    """Signal that the tenant must (re)authorize before the job can proceed."""

    provider: Provider
    purpose: CredentialPurpose
    reason: str
    authorization_url: str | None = None


@dataclass(frozen=True)
class ProviderAuthConfig:
    """Static OAuth description of a provider purpose."""

    grant_type: GrantType
    default_scopes: tuple[str, ...]
    supports_refresh: bool = True
    supports_long_lived_exchange: bool = False


PROVIDER_AUTH_CONFIGS: dict[tuple[Provider, CredentialPurpose], ProviderAuthConfig] = {
    (Provider.MICROSOFT, CredentialPurpose.PRIMARY_AUTH): ProviderAuthConfig(
        grant_type=GrantType.AUTHORIZATION_CODE,
        default_scopes=("openid", "profile", "email", "offline_access", "User.Read"),
    ),
    (Provider.MICROSOFT, CredentialPurpose.SECONDARY_INGESTION): ProviderAuthConfig(
        grant_type=GrantType.CLIENT_CREDENTIALS,
        default_scopes=("Mail.Read", "Mail.Send", "User.Read.All"),
        supports_refresh=False,
    ),
    (Provider.GOOGLE_ADS, CredentialPurpose.PRIMARY_AUTH): ProviderAuthConfig(
        grant_type=GrantType.AUTHORIZATION_CODE,
        default_scopes=("https://www.googleapis.com/auth/adwords",),
    ),
    (Provider.LINKEDIN, CredentialPurpose.PRIMARY_AUTH): ProviderAuthConfig(
        grant_type=GrantType.AUTHORIZATION_CODE,
        default_scopes=("r_ads", "rw_ads", "r_organization_social"),
    ),
    (Provider.META, CredentialPurpose.PRIMARY_AUTH): ProviderAuthConfig(
        grant_type=GrantType.AUTHORIZATION_CODE,
        default_scopes=("ads_management", "ads_read", "business_management"),
        supports_refresh=False,
        supports_long_lived_exchange=True,
    ),
}


def get_auth_config(provider: Provider, purpose: CredentialPurpose) -> ProviderAuthConfig:
    """Look up the OAuth description for a provider purpose.

    Raises:
        KeyError: If the provider does not support that purpose.
    """
    return PROVIDER_AUTH_CONFIGS[(provider, purpose)]
