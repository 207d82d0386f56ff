"""LinkedIn Marketing API provider for ad campaigns.

The campaign search endpoint has no change feed, so the cursor encodes an
offset plus a modification watermark: pages are walked with ``start`` and
only campaigns modified at or after the watermark are returned. Once the
last page is reached the cursor resets to offset 0 with the watermark moved
to the start of the listing.

LinkedIn rotates refresh tokens on every refresh; the old one stops working
as soon as the new one is issued.
"""

import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

from tenantsync.core.exceptions import ValidationRejectedError
from tenantsync.integrations.domain import CredentialPurpose, Provider, TokenGrant
from tenantsync.integrations.providers.base import (
    AdPlatformProvider,
    ChangePage,
    decode_cursor,
    encode_cursor,
)
from tenantsync.integrations.sync_domain import PartitionKey
from tenantsync.services.campaign_models import LINKEDIN_CAMPAIGN_SCHEMA

logger = logging.getLogger(__name__)

API_URL = "https://api.linkedin.com/rest"
AUTHORIZE_URL = "https://www.linkedin.com/oauth/v2/authorization"
TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"


def _to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _prune_targeting(criteria: dict[str, Any]) -> dict[str, Any]:
    """Drop facet groups that ended up empty; LinkedIn rejects them."""
    pruned: dict[str, Any] = {}
    include = criteria.get("include")
    if isinstance(include, dict):
        groups = [g for g in include.get("and", []) if g.get("or")]
        if groups:
            pruned["include"] = {**include, "and": groups}
    elif include is not None:
        pruned["include"] = include
    exclude = criteria.get("exclude")
    if isinstance(exclude, dict):
        facets = exclude.get("or")
        if facets:
            pruned["exclude"] = exclude
    elif exclude is not None:
        pruned["exclude"] = exclude
    return pruned


class LinkedInAdsProvider(AdPlatformProvider):
    """LinkedIn ad campaigns under ``/adAccounts/{id}/adCampaigns``."""

    provider = Provider.LINKEDIN
    schema = LINKEDIN_CAMPAIGN_SCHEMA
    rotates_refresh_token = True

    def default_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "LinkedIn-Version": self.settings.LINKEDIN_API_VERSION,
            "X-Restli-Protocol-Version": "2.0.0",
        }

    def _campaigns_url(self, account_id: str) -> str:
        return f"{API_URL}/adAccounts/{account_id}/adCampaigns"

    def _client_fields(self) -> dict[str, str]:
        return {
            "client_id": self.settings.LINKEDIN_CLIENT_ID,
            "client_secret": self.settings.LINKEDIN_CLIENT_SECRET.get_secret_value(),
        }

    # -- Authorization --------------------------------------------------------

    def authorization_url(
        self, tenant_id: str, purpose: CredentialPurpose, scopes: list[str], state: str
    ) -> str:
        query = {
            "response_type": "code",
            "client_id": self.settings.LINKEDIN_CLIENT_ID,
            "redirect_uri": self.settings.OAUTH_REDIRECT_BASE_URL,
            "scope": " ".join(scopes),
            "state": state,
        }
        return f"{AUTHORIZE_URL}?{urlencode(query)}"

    async def exchange_code(self, code: str, redirect_uri: str, scopes: list[str]) -> TokenGrant:
        return await self._token_request(
            TOKEN_URL,
            {
                **self._client_fields(),
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            requested_scopes=scopes,
        )

    async def refresh(self, refresh_token: str, scopes: list[str]) -> TokenGrant:
        grant = await self._token_request(
            TOKEN_URL,
            {
                **self._client_fields(),
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            requested_scopes=scopes,
            idempotent=not self.rotates_refresh_token,
        )
        grant.refresh_token = grant.refresh_token or refresh_token
        return grant

    # -- Campaigns ------------------------------------------------------------

    def _remote_updated_at(self, raw: dict[str, Any]) -> datetime | None:
        modified = (raw.get("changeAuditStamps") or {}).get("lastModified") or {}
        millis = modified.get("time")
        if millis is None:
            return None
        return datetime.fromtimestamp(int(millis) / 1000, tz=UTC)

    async def list_changes(
        self,
        access_token: str,
        partition: PartitionKey,
        cursor: str | None,
        since: datetime,
    ) -> ChangePage:
        state = decode_cursor(cursor)
        start = int(state.get("start", 0))
        watermark = state.get("since")
        listing_started = state.get("listing_started") or _to_millis(datetime.now(UTC))
        page_size = self.settings.SYNC_PAGE_SIZE

        response = await self._request(
            "GET",
            self._campaigns_url(partition.account),
            access_token=access_token,
            params={"q": "search", "start": str(start), "count": str(page_size)},
        )
        body = response.json()
        elements = body.get("elements", [])
        total = (body.get("paging") or {}).get("total")

        items = elements
        if watermark is not None:
            items = [
                e
                for e in elements
                if ((e.get("changeAuditStamps") or {}).get("lastModified") or {}).get("time", 0)
                >= watermark
            ]

        next_start = start + len(elements)
        has_more = len(elements) == page_size and (total is None or next_start < total)
        if has_more:
            next_cursor = encode_cursor(
                {"start": next_start, "since": watermark, "listing_started": listing_started}
            )
        else:
            next_cursor = encode_cursor({"start": 0, "since": listing_started})
        return ChangePage(items=items, next_cursor=next_cursor, has_more=has_more)

    def validate_patch(self, partial: dict[str, Any]) -> None:
        criteria = partial.get("targetingCriteria")
        if isinstance(criteria, dict):
            partial["targetingCriteria"] = _prune_targeting(criteria)
            if not partial["targetingCriteria"].get("include"):
                raise ValidationRejectedError(
                    self.name,
                    "Targeting must include at least one facet",
                    fields=["targeting"],
                )

    async def create_entity(
        self, access_token: str, account_id: str, payload: dict[str, Any]
    ) -> str:
        body = {**payload, "account": f"urn:li:sponsoredAccount:{account_id}"}
        response = await self._request(
            "POST",
            self._campaigns_url(account_id),
            access_token=access_token,
            json=body,
        )
        external_id = response.headers.get("x-restli-id") or response.headers.get("x-linkedin-id")
        if not external_id:
            raise ValidationRejectedError(self.name, "LinkedIn did not return a campaign id")
        return external_id

    async def patch_entity(
        self,
        access_token: str,
        account_id: str,
        external_id: str,
        partial: dict[str, Any],
        field_mask: list[str],
    ) -> None:
        to_set = {k: v for k, v in partial.items() if v is not None}
        to_unset = [k for k, v in partial.items() if v is None]
        patch: dict[str, Any] = {}
        if to_set:
            patch["$set"] = to_set
        if to_unset:
            patch["$unset"] = to_unset
        await self._request(
            "POST",
            f"{self._campaigns_url(account_id)}/{external_id}",
            access_token=access_token,
            headers={"X-RestLi-Method": "PARTIAL_UPDATE"},
            json={"patch": patch},
        )

    async def delete_entity(self, access_token: str, account_id: str, external_id: str) -> None:
        await self._request(
            "DELETE",
            f"{self._campaigns_url(account_id)}/{external_id}",
            access_token=access_token,
        )

    def _error_fields(self, body: dict[str, Any]) -> list[str]:
        fields = []
        for error in (body.get("errorDetails") or {}).get("inputErrors", []):
            path = ((error.get("input") or {}).get("inputPath") or {}).get("fieldPath")
            if path:
                fields.append(path)
        return fields
