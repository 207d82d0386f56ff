"""Shared fixtures: in-memory stores, fake provider clients and state resets."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from tenantsync.core.config import Settings
from tenantsync.core.rate_limiter import ProviderRateLimiter, reset_rate_limiters
from tenantsync.core.resilience import CircuitBreaker, get_all_circuit_breakers
from tenantsync.db.memory import (
    InMemoryCredentialStore,
    InMemoryCursorStore,
    InMemoryEntityStore,
    InMemoryJobConfigStore,
    InMemoryLeadStore,
    InMemoryOutboundActionStore,
    InMemoryTenantConfigStore,
)
from tenantsync.integrations.domain import (
    CredentialPurpose,
    CredentialRecord,
    Provider,
    TokenGrant,
)
from tenantsync.integrations.providers import AdPlatformProvider, ChangePage, MicrosoftGraphProvider
from tenantsync.integrations.sync_domain import PartitionKey
from tenantsync.jobs.context import JobDependencies
from tenantsync.services.campaign_models import LINKEDIN_CAMPAIGN_SCHEMA

MAILBOX = "sales@acme.com"
TENANT = "tenant-1"


@pytest.fixture(autouse=True)
def reset_shared_state() -> Any:
    """Reset process-wide limiters, breakers and singletons around each test."""
    import tenantsync.integrations.providers
    import tenantsync.integrations.service
    import tenantsync.services.notification_service

    reset_rate_limiters()
    for breaker in get_all_circuit_breakers().values():
        breaker.reset()
    yield
    tenantsync.integrations.providers._providers.clear()
    tenantsync.integrations.service._integration_service = None
    tenantsync.services.notification_service._notification_service = None


def _fake_plumbing(name: str) -> dict[str, Any]:
    return {
        "http_client": MagicMock(),
        "limiter": ProviderRateLimiter(name, max_concurrent=10, min_interval=0),
        "breaker": CircuitBreaker(name),
        "settings": Settings(PROVIDER_MAX_RETRIES=0),
    }


class _PagedFeed:
    """Serves queued pages (or raises queued exceptions) and records every call."""

    def _init_feed(self, pages: list[ChangePage | Exception] | None) -> None:
        self.pages: list[ChangePage | Exception] = list(pages or [])
        self.list_calls: list[tuple[str, str | None]] = []
        self.since_values: list[datetime] = []

    async def list_changes(
        self,
        access_token: str,
        partition: PartitionKey,
        cursor: str | None,
        since: datetime,
    ) -> ChangePage:
        self.list_calls.append((str(partition), cursor))
        self.since_values.append(since)
        if not self.pages:
            return ChangePage(items=[], next_cursor=cursor, has_more=False)
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page


class FakeMailProvider(_PagedFeed, MicrosoftGraphProvider):
    """Graph provider that never touches the network."""

    def __init__(self, pages: list[ChangePage | Exception] | None = None) -> None:
        super().__init__(**_fake_plumbing("fake-microsoft"))
        self._init_feed(pages)
        self.acquire_app_token = AsyncMock(
            return_value=TokenGrant(access_token="app-token", expires_in=3600)
        )
        self.reply_to_message = AsyncMock(return_value=None)
        self.send_mail = AsyncMock(return_value=None)
        self.list_sent_items = AsyncMock(return_value=[])
        self.list_conversation_messages = AsyncMock(return_value=[])


class FakeAdProvider(_PagedFeed, AdPlatformProvider):
    """LinkedIn-shaped ad platform with recorded writes."""

    provider = Provider.LINKEDIN
    schema = LINKEDIN_CAMPAIGN_SCHEMA

    def __init__(self, pages: list[ChangePage | Exception] | None = None) -> None:
        super().__init__(**_fake_plumbing("fake-linkedin"))
        self._init_feed(pages)
        self.refresh = AsyncMock()
        self.create_entity = AsyncMock(return_value="urn:li:sponsoredCampaign:900")
        self.patch_entity = AsyncMock(return_value=None)
        self.delete_entity = AsyncMock(return_value=None)

    def authorization_url(
        self, tenant_id: str, purpose: CredentialPurpose, scopes: list[str], state: str
    ) -> str:
        scope = "+".join(scopes)
        return f"https://auth.example.com/linkedin?tenant={tenant_id}&scope={scope}&state={state}"

    async def exchange_code(self, code: str, redirect_uri: str, scopes: list[str]) -> TokenGrant:
        return TokenGrant(access_token=f"token-for-{code}", expires_in=3600, refresh_token="r1")

    async def create_entity(self, access_token: str, account_id: str, payload: dict[str, Any]) -> str:
        raise NotImplementedError

    async def patch_entity(
        self,
        access_token: str,
        account_id: str,
        external_id: str,
        partial: dict[str, Any],
        field_mask: list[str],
    ) -> None:
        raise NotImplementedError

    async def delete_entity(self, access_token: str, account_id: str, external_id: str) -> None:
        raise NotImplementedError

    def _remote_updated_at(self, raw: dict[str, Any]) -> datetime | None:
        millis = raw.get("lastModified")
        return datetime.fromtimestamp(millis / 1000, tz=UTC) if millis else None


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with no waits, so delivery polling and retries run instantly."""
    return Settings(
        PROVIDER_MAX_RETRIES=0,
        OUTBOUND_RESOLVE_DELAY_SECONDS=0,
        OUTBOUND_RATE_LIMIT_WAIT_SECONDS=0,
    )


@pytest.fixture
def mail_provider() -> FakeMailProvider:
    return FakeMailProvider()


@pytest.fixture
def ad_provider() -> FakeAdProvider:
    return FakeAdProvider()


@pytest.fixture
def provider_factory(
    mail_provider: FakeMailProvider, ad_provider: FakeAdProvider
) -> Callable[[Provider], Any]:
    clients = {Provider.MICROSOFT: mail_provider, Provider.LINKEDIN: ad_provider}
    return lambda provider: clients[provider]


@pytest.fixture
def notifier() -> MagicMock:
    service = MagicMock()
    service.notify = AsyncMock()
    return service


@pytest.fixture
def deps(
    provider_factory: Callable[[Provider], Any],
    notifier: MagicMock,
    fast_settings: Settings,
) -> JobDependencies:
    """Full engine wiring over in-memory stores and fake providers."""
    return JobDependencies.build(
        credentials=InMemoryCredentialStore(),
        cursors=InMemoryCursorStore(),
        leads=InMemoryLeadStore(),
        entities=InMemoryEntityStore(),
        outbound=InMemoryOutboundActionStore(),
        job_configs=InMemoryJobConfigStore(),
        tenant_configs=InMemoryTenantConfigStore(),
        notifier=notifier,
        provider_factory=provider_factory,
        settings=fast_settings,
    )


@pytest.fixture
def linkedin_credential() -> CredentialRecord:
    return CredentialRecord(
        tenant_id=TENANT,
        provider=Provider.LINKEDIN,
        purpose=CredentialPurpose.PRIMARY_AUTH,
        access_token="li-access",
        scopes=["r_ads", "rw_ads", "r_organization_social"],
        refresh_token="li-refresh",
        expires_at=datetime.now(UTC) + timedelta(hours=1),
    )


def graph_message(
    message_id: str,
    sender: str,
    subject: str,
    body: str = "",
    conversation_id: str | None = None,
    to: str = MAILBOX,
    sender_name: str | None = None,
    received_at: datetime | None = None,
) -> dict[str, Any]:
    """A Graph message resource as returned by the delta endpoint."""
    received = received_at or datetime.now(UTC) - timedelta(hours=1)
    return {
        "id": message_id,
        "conversationId": conversation_id or f"conv-{message_id}",
        "subject": subject,
        "body": {"contentType": "text", "content": body},
        "from": {"emailAddress": {"address": sender, "name": sender_name}},
        "toRecipients": [{"emailAddress": {"address": to}}],
        "receivedDateTime": received.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


@pytest.fixture
def make_message() -> Callable[..., dict[str, Any]]:
    return graph_message
