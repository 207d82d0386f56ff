"""Tests for provider clients over a mocked HTTP transport."""

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs

import httpx
import pytest

from tenantsync.core.config import Settings
from tenantsync.core.exceptions import (
    InvalidGrantError,
    NeedsAuthorizationError,
    NotFoundError,
    RateLimitError,
    RetryableTransientError,
    ValidationRejectedError,
)
from tenantsync.core.rate_limiter import ProviderRateLimiter
from tenantsync.core.resilience import CircuitBreaker
from tenantsync.integrations.domain import Provider
from tenantsync.integrations.providers import (
    BaseProvider,
    GoogleAdsProvider,
    LinkedInAdsProvider,
    MetaAdsProvider,
    MicrosoftGraphProvider,
    get_ad_provider,
    get_provider,
)
from tenantsync.integrations.sync_domain import PartitionKey, PartitionKind

Handler = Callable[[httpx.Request], httpx.Response]


def _provider(cls: type[BaseProvider], handler: Handler, **settings: Any) -> Any:
    options: dict[str, Any] = {"PROVIDER_MAX_RETRIES": 0, **settings}
    return cls(
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        limiter=ProviderRateLimiter(f"test-{cls.provider.value}", max_concurrent=5, min_interval=0),
        breaker=CircuitBreaker(f"test-{cls.provider.value}"),
        settings=Settings(**options),
    )


class Recorder:
    """Replays canned responses and keeps every request."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


class TestLinkedInAdsProvider:
    """LinkedIn campaign writes and error mapping."""

    @pytest.mark.asyncio
    async def test_patch_sends_partial_update(self) -> None:
        recorder = Recorder(httpx.Response(204))
        provider = _provider(LinkedInAdsProvider, recorder)

        await provider.patch_entity(
            "token", "50912", "123", {"name": "Spring v2", "unitCost": None}, ["name", "unitCost"]
        )

        request = recorder.last
        assert request.method == "POST"
        assert request.url.path == "/rest/adAccounts/50912/adCampaigns/123"
        assert request.headers["X-RestLi-Method"] == "PARTIAL_UPDATE"
        assert request.headers["Authorization"] == "Bearer token"
        assert request.headers["LinkedIn-Version"] == provider.settings.LINKEDIN_API_VERSION
        assert json.loads(request.content) == {
            "patch": {"$set": {"name": "Spring v2"}, "$unset": ["unitCost"]}
        }

    @pytest.mark.asyncio
    async def test_create_reads_id_header(self) -> None:
        recorder = Recorder(httpx.Response(201, headers={"x-restli-id": "urn:li:sponsoredCampaign:7"}))
        provider = _provider(LinkedInAdsProvider, recorder)

        external_id = await provider.create_entity("token", "50912", {"name": "New"})

        assert external_id == "urn:li:sponsoredCampaign:7"
        assert json.loads(recorder.last.content)["account"] == "urn:li:sponsoredAccount:50912"

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self) -> None:
        provider = _provider(LinkedInAdsProvider, Recorder(httpx.Response(429, headers={"Retry-After": "30"})))

        with pytest.raises(RateLimitError) as exc_info:
            await provider.patch_entity("token", "50912", "123", {"name": "x"}, ["name"])

        assert exc_info.value.retry_after == 30.0
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_unauthorized_needs_authorization(self) -> None:
        provider = _provider(LinkedInAdsProvider, Recorder(httpx.Response(401)))

        with pytest.raises(NeedsAuthorizationError) as exc_info:
            await provider.delete_entity("token", "50912", "123")
        assert exc_info.value.reason == "unauthorized"

    @pytest.mark.asyncio
    async def test_missing_campaign_is_not_found(self) -> None:
        provider = _provider(LinkedInAdsProvider, Recorder(httpx.Response(404)))

        with pytest.raises(NotFoundError):
            await provider.delete_entity("token", "50912", "123")

    @pytest.mark.asyncio
    async def test_rejected_refresh_is_invalid_grant(self) -> None:
        """Test that a rejected refresh token is a revocation, not a transient failure."""
        provider = _provider(
            LinkedInAdsProvider,
            Recorder(httpx.Response(400, json={"error": "invalid_grant", "error_description": "revoked"})),
        )

        with pytest.raises(InvalidGrantError):
            await provider.refresh("old-refresh", ["r_ads"])

    @pytest.mark.asyncio
    async def test_refresh_keeps_previous_refresh_token_when_none_returned(self) -> None:
        provider = _provider(
            LinkedInAdsProvider,
            Recorder(httpx.Response(200, json={"access_token": "new", "expires_in": 5184000})),
        )

        grant = await provider.refresh("old-refresh", ["r_ads"])

        assert grant.access_token == "new"
        assert grant.refresh_token == "old-refresh"
        assert grant.scopes == ["r_ads"]

    @pytest.mark.asyncio
    async def test_failed_refresh_is_not_replayed(self) -> None:
        """Test that a rotating refresh token is sent once even when retries are enabled."""
        recorder = Recorder(httpx.Response(503), httpx.Response(200, json={"access_token": "new"}))
        provider = _provider(LinkedInAdsProvider, recorder, PROVIDER_MAX_RETRIES=2)

        with pytest.raises(RetryableTransientError):
            await provider.refresh("old-refresh", ["r_ads"])

        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_validation_error_reports_fields(self) -> None:
        body = {
            "message": "Invalid budget",
            "errorDetails": {
                "inputErrors": [{"input": {"inputPath": {"fieldPath": "dailyBudget.amount"}}}]
            },
        }
        provider = _provider(LinkedInAdsProvider, Recorder(httpx.Response(400, json=body)))

        with pytest.raises(ValidationRejectedError) as exc_info:
            await provider.patch_entity("token", "50912", "123", {"dailyBudget": {}}, ["dailyBudget"])

        assert exc_info.value.fields == ["dailyBudget.amount"]
        assert exc_info.value.message == "Invalid budget"

    def test_validate_patch_prunes_empty_targeting_groups(self) -> None:
        provider = _provider(LinkedInAdsProvider, Recorder())
        partial = {
            "targetingCriteria": {
                "include": {"and": [{"or": {"urn:li:adTargetingFacet:locations": ["urn:li:geo:1"]}}, {"or": {}}]},
                "exclude": {"or": {}},
            }
        }

        provider.validate_patch(partial)

        assert partial["targetingCriteria"] == {
            "include": {"and": [{"or": {"urn:li:adTargetingFacet:locations": ["urn:li:geo:1"]}}]}
        }

    def test_validate_patch_rejects_targeting_without_include(self) -> None:
        provider = _provider(LinkedInAdsProvider, Recorder())

        with pytest.raises(ValidationRejectedError) as exc_info:
            provider.validate_patch({"targetingCriteria": {"include": {"and": [{"or": {}}]}}})
        assert exc_info.value.fields == ["targeting"]

    @pytest.mark.asyncio
    async def test_listing_pages_then_resets_to_watermark(self) -> None:
        """Test that a full page continues and the last page resets to offset 0."""
        recorder = Recorder(
            httpx.Response(200, json={"elements": [{"id": 1}, {"id": 2}], "paging": {"total": 3}}),
            httpx.Response(200, json={"elements": [{"id": 3}], "paging": {"total": 3}}),
        )
        provider = _provider(LinkedInAdsProvider, recorder, SYNC_PAGE_SIZE=2)
        partition = PartitionKey(Provider.LINKEDIN, PartitionKind.CAMPAIGNS, "50912")
        since = datetime.now(UTC) - timedelta(days=7)

        first = await provider.list_changes("token", partition, None, since)
        second = await provider.list_changes("token", partition, first.next_cursor, since)

        assert first.has_more is True
        assert json.loads(first.next_cursor)["start"] == 2
        assert recorder.requests[1].url.params["start"] == "2"
        assert second.has_more is False
        cursor = json.loads(second.next_cursor)
        assert cursor["start"] == 0
        assert cursor["since"] is not None


class TestMicrosoftGraphProvider:
    """Mailbox delta feed and sending."""

    @pytest.mark.asyncio
    async def test_initial_delta_request_is_bounded_and_drops_removed(self) -> None:
        recorder = Recorder(
            httpx.Response(
                200,
                json={
                    "value": [
                        {"id": "m1", "subject": "Quote"},
                        {"id": "m2", "@removed": {"reason": "deleted"}},
                    ],
                    "@odata.nextLink": "https://graph.microsoft.com/v1.0/next?page=2",
                },
            )
        )
        provider = _provider(MicrosoftGraphProvider, recorder)
        partition = PartitionKey(Provider.MICROSOFT, PartitionKind.LEADS, "sales@acme.com", "inbox")
        since = datetime(2024, 5, 1, tzinfo=UTC)

        page = await provider.list_changes("token", partition, None, since)

        request = recorder.last
        assert request.url.path.endswith("/mailFolders/inbox/messages/delta")
        assert request.url.params["$filter"] == "receivedDateTime ge 2024-05-01T00:00:00Z"
        assert request.headers["Prefer"].startswith("odata.maxpagesize=")
        assert [item["id"] for item in page.items] == ["m1"]
        assert page.next_cursor == "https://graph.microsoft.com/v1.0/next?page=2"
        assert page.has_more is True

    @pytest.mark.asyncio
    async def test_saved_link_is_replayed_verbatim(self) -> None:
        delta_link = "https://graph.microsoft.com/v1.0/users/x/messages/delta?$deltatoken=abc"
        recorder = Recorder(httpx.Response(200, json={"value": [], "@odata.deltaLink": delta_link}))
        provider = _provider(MicrosoftGraphProvider, recorder)
        partition = PartitionKey(Provider.MICROSOFT, PartitionKind.LEADS, "sales@acme.com", "inbox")
        cursor = "https://graph.microsoft.com/v1.0/next?page=2"

        page = await provider.list_changes("token", partition, cursor, datetime.now(UTC))

        assert str(recorder.last.url) == cursor
        assert page.next_cursor == delta_link
        assert page.has_more is False

    @pytest.mark.asyncio
    async def test_reply_posts_comment(self) -> None:
        recorder = Recorder(httpx.Response(202))
        provider = _provider(MicrosoftGraphProvider, recorder)

        await provider.reply_to_message("token", "sales@acme.com", "AAMk1", "<p>Thanks</p>")

        assert recorder.last.method == "POST"
        assert recorder.last.url.path.endswith("/messages/AAMk1/reply")
        assert json.loads(recorder.last.content) == {"comment": "<p>Thanks</p>"}

    @pytest.mark.asyncio
    async def test_send_is_not_retried(self) -> None:
        """Test that a failed send is attempted exactly once."""
        recorder = Recorder(httpx.Response(503), httpx.Response(202))
        provider = _provider(MicrosoftGraphProvider, recorder, PROVIDER_MAX_RETRIES=2)

        with pytest.raises(RetryableTransientError):
            await provider.send_mail("token", "sales@acme.com", "jane@corp.com", "Hi", "<p>Hi</p>")
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_reads_are_retried(self) -> None:
        recorder = Recorder(httpx.Response(503), httpx.Response(200, json={"value": [{"id": "s1"}]}))
        provider = _provider(MicrosoftGraphProvider, recorder, PROVIDER_MAX_RETRIES=2)

        with patch("tenantsync.core.resilience.asyncio.sleep", new_callable=AsyncMock):
            sent = await provider.list_sent_items("token", "sales@acme.com")

        assert sent == [{"id": "s1"}]
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_app_token_records_requested_scopes(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"access_token": "app", "expires_in": 3599}))
        provider = _provider(MicrosoftGraphProvider, recorder)

        grant = await provider.acquire_app_token(["Mail.Read"])

        assert grant.scopes == ["Mail.Read"]
        form = parse_qs(recorder.last.content.decode())
        assert form["grant_type"] == ["client_credentials"]
        assert form["scope"] == ["https://graph.microsoft.com/.default"]


class TestMetaAdsProvider:
    """Meta throttling codes, long-lived tokens and form writes."""

    @pytest.mark.asyncio
    async def test_throttle_code_is_rate_limit(self) -> None:
        body = {"error": {"code": 17, "message": "User request limit reached"}}
        provider = _provider(MetaAdsProvider, Recorder(httpx.Response(400, json=body)))

        with pytest.raises(RateLimitError):
            await provider.patch_entity("token", "act", "238", {"name": "x"}, ["name"])

    @pytest.mark.asyncio
    async def test_expired_session_is_invalid_grant(self) -> None:
        body = {"error": {"code": 190, "type": "OAuthException", "message": "Session has expired"}}
        provider = _provider(MetaAdsProvider, Recorder(httpx.Response(400, json=body)))

        with pytest.raises(InvalidGrantError):
            await provider.exchange_long_lived("short-lived")

    @pytest.mark.asyncio
    async def test_patch_is_form_encoded(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"success": True}))
        provider = _provider(MetaAdsProvider, recorder)

        await provider.patch_entity(
            "token", "1001", "238", {"daily_budget": 5000, "special_ad_categories": []}, []
        )

        assert recorder.last.url.path.endswith("/238")
        form = parse_qs(recorder.last.content.decode(), keep_blank_values=True)
        assert form == {"daily_budget": ["5000"], "special_ad_categories": ["[]"]}

    @pytest.mark.asyncio
    async def test_validation_error_reports_blamed_fields(self) -> None:
        body = {
            "error": {
                "code": 100,
                "message": "Invalid parameter",
                "error_data": {"blame_field_specs": [["daily_budget"]]},
            }
        }
        provider = _provider(MetaAdsProvider, Recorder(httpx.Response(400, json=body)))

        with pytest.raises(ValidationRejectedError) as exc_info:
            await provider.patch_entity("token", "1001", "238", {"daily_budget": 1}, [])
        assert exc_info.value.fields == ["daily_budget"]

    def test_both_budgets_are_rejected_before_sending(self) -> None:
        provider = _provider(MetaAdsProvider, Recorder())

        with pytest.raises(ValidationRejectedError):
            provider.validate_patch({"daily_budget": 100, "lifetime_budget": 1000})


class TestGoogleAdsProvider:
    """Google Ads mutate operations."""

    @pytest.mark.asyncio
    async def test_patch_sends_update_mask(self) -> None:
        recorder = Recorder(httpx.Response(200, json={"results": [{}]}))
        provider = _provider(GoogleAdsProvider, recorder)

        await provider.patch_entity(
            "token", "123", "456", {"name": "Brand", "status": "PAUSED"}, ["name", "status"]
        )

        body = json.loads(recorder.last.content)
        assert body == {
            "operations": [
                {
                    "update": {
                        "resourceName": "customers/123/campaigns/456",
                        "name": "Brand",
                        "status": "PAUSED",
                    },
                    "updateMask": "name,status",
                }
            ]
        }
        assert recorder.last.url.path.endswith("/customers/123/campaigns:mutate")
        assert "developer-token" in recorder.last.headers

    @pytest.mark.asyncio
    async def test_create_returns_id_from_resource_name(self) -> None:
        recorder = Recorder(
            httpx.Response(200, json={"results": [{"resourceName": "customers/123/campaigns/789"}]})
        )
        provider = _provider(GoogleAdsProvider, recorder)

        assert await provider.create_entity("token", "123", {"name": "New"}) == "789"

    @pytest.mark.asyncio
    async def test_search_pages_with_page_token(self) -> None:
        recorder = Recorder(
            httpx.Response(200, json={"results": [{"campaign": {"id": "1"}}], "nextPageToken": "p2"})
        )
        provider = _provider(GoogleAdsProvider, recorder)
        partition = PartitionKey(Provider.GOOGLE_ADS, PartitionKind.CAMPAIGNS, "123")

        page = await provider.list_changes("token", partition, None, datetime.now(UTC))

        assert page.items == [{"id": "1"}]
        assert page.has_more is True
        assert json.loads(page.next_cursor) == {"page_token": "p2"}


class TestProviderRegistry:
    """Shared provider clients."""

    def test_get_provider_is_shared(self) -> None:
        assert get_provider(Provider.LINKEDIN) is get_provider(Provider.LINKEDIN)

    def test_mail_provider_is_not_an_ad_platform(self) -> None:
        with pytest.raises(ValueError):
            get_ad_provider(Provider.MICROSOFT)

    def test_ad_provider_lookup(self) -> None:
        assert isinstance(get_ad_provider(Provider.META), MetaAdsProvider)
