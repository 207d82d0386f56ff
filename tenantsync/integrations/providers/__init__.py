"""Per-platform provider clients.

Each provider implements the authorization boundary (code exchange,
refresh, long-lived exchange, app tokens) and the resource boundary
(change listing, create, partial update, delete) over httpx.
"""

from tenantsync.integrations.domain import Provider
from tenantsync.integrations.providers.base import (
    AdPlatformProvider,
    BaseProvider,
    ChangePage,
    RemoteEntity,
)
from tenantsync.integrations.providers.google_ads import GoogleAdsProvider
from tenantsync.integrations.providers.linkedin import LinkedInAdsProvider
from tenantsync.integrations.providers.meta import MetaAdsProvider
from tenantsync.integrations.providers.microsoft import MicrosoftGraphProvider

_PROVIDER_CLASSES: dict[Provider, type[BaseProvider]] = {
    Provider.MICROSOFT: MicrosoftGraphProvider,
    Provider.LINKEDIN: LinkedInAdsProvider,
    Provider.META: MetaAdsProvider,
    Provider.GOOGLE_ADS: GoogleAdsProvider,
}

_providers: dict[Provider, BaseProvider] = {}


def get_provider(provider: Provider) -> BaseProvider:
    """Get or create the shared client for a provider."""
    if provider not in _providers:
        _providers[provider] = _PROVIDER_CLASSES[provider]()
    return _providers[provider]


def get_ad_provider(provider: Provider) -> AdPlatformProvider:
    """Get the shared client for an ad platform.

    Raises:
        ValueError: If the provider does not manage campaigns.
    """
    client = get_provider(provider)
    if not isinstance(client, AdPlatformProvider):
        raise ValueError(f"{provider.value} does not manage campaigns")
    return client


async def close_providers() -> None:
    """Close every shared HTTP client (on shutdown)."""
    for client in list(_providers.values()):
        await client.aclose()
    _providers.clear()


__all__ = [
    "AdPlatformProvider",
    "BaseProvider",
    "ChangePage",
    "GoogleAdsProvider",
    "LinkedInAdsProvider",
    "MetaAdsProvider",
    "MicrosoftGraphProvider",
    "RemoteEntity",
    "close_providers",
    "get_ad_provider",
    "get_provider",
]
