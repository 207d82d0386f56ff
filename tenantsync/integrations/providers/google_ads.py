"""Google Ads API provider for campaigns.

Campaigns are listed with a GAQL ``googleAds:search`` query and paged with
``pageToken``. Writes go through ``campaigns:mutate``: updates carry an
``updateMask`` naming exactly the changed fields.

Google refresh tokens do not rotate; a refresh returns only a new access
token.
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
from tenantsync.services.campaign_models import GOOGLE_ADS_CAMPAIGN_SCHEMA

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"

_CAMPAIGN_QUERY = (
    "SELECT campaign.id, campaign.name, campaign.status, "
    "campaign.advertising_channel_type, campaign.bidding_strategy_type, "
    "campaign.campaign_budget, campaign.start_date, campaign.end_date, "
    "campaign.network_settings.target_google_search, "
    "campaign.network_settings.target_search_network, "
    "campaign.network_settings.target_content_network "
    "FROM campaign WHERE campaign.status != 'REMOVED' ORDER BY campaign.id"
)


class GoogleAdsProvider(AdPlatformProvider):
    """Google Ads campaigns under ``/customers/{id}``."""

    provider = Provider.GOOGLE_ADS
    schema = GOOGLE_ADS_CAMPAIGN_SCHEMA

    @property
    def _api_url(self) -> str:
        return f"https://googleads.googleapis.com/{self.settings.GOOGLE_ADS_API_VERSION}"

    def default_headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "developer-token": self.settings.GOOGLE_ADS_DEVELOPER_TOKEN.get_secret_value(),
        }
        if self.settings.GOOGLE_ADS_LOGIN_CUSTOMER_ID:
            headers["login-customer-id"] = self.settings.GOOGLE_ADS_LOGIN_CUSTOMER_ID
        return headers

    def _client_fields(self) -> dict[str, str]:
        return {
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "client_secret": self.settings.GOOGLE_CLIENT_SECRET.get_secret_value(),
        }

    @staticmethod
    def _resource_name(account_id: str, external_id: str) -> str:
        return f"customers/{account_id}/campaigns/{external_id}"

    # -- Authorization --------------------------------------------------------

    def authorization_url(
        self, tenant_id: str, purpose: CredentialPurpose, scopes: list[str], state: str
    ) -> str:
        query = {
            "client_id": self.settings.GOOGLE_CLIENT_ID,
            "redirect_uri": self.settings.OAUTH_REDIRECT_BASE_URL,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
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
        return await self._token_request(
            TOKEN_URL,
            {
                **self._client_fields(),
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            requested_scopes=scopes,
        )

    # -- Campaigns ------------------------------------------------------------

    async def list_changes(
        self,
        access_token: str,
        partition: PartitionKey,
        cursor: str | None,
        since: datetime,
    ) -> ChangePage:
        state = decode_cursor(cursor)
        body: dict[str, Any] = {"query": _CAMPAIGN_QUERY}
        if state.get("page_token"):
            body["pageToken"] = state["page_token"]

        response = await self._request(
            "POST",
            f"{self._api_url}/customers/{partition.account}/googleAds:search",
            access_token=access_token,
            idempotent=True,
            json=body,
        )
        data = response.json()
        items = [row["campaign"] for row in data.get("results", []) if "campaign" in row]
        page_token = data.get("nextPageToken")
        if page_token:
            next_cursor = encode_cursor({"page_token": page_token})
        else:
            next_cursor = encode_cursor(
                {"page_token": None, "synced_at": datetime.now(UTC).isoformat()}
            )
        return ChangePage(items=items, next_cursor=next_cursor, has_more=bool(page_token))

    async def _mutate(
        self, access_token: str, account_id: str, operation: dict[str, Any]
    ) -> list[dict[str, Any]]:
        response = await self._request(
            "POST",
            f"{self._api_url}/customers/{account_id}/campaigns:mutate",
            access_token=access_token,
            json={"operations": [operation]},
        )
        return response.json().get("results", [])

    async def create_entity(
        self, access_token: str, account_id: str, payload: dict[str, Any]
    ) -> str:
        results = await self._mutate(access_token, account_id, {"create": payload})
        resource_name = results[0].get("resourceName") if results else None
        if not resource_name:
            raise ValidationRejectedError(self.name, "Google Ads did not return a resource name")
        return resource_name.rsplit("/", 1)[-1]

    async def patch_entity(
        self,
        access_token: str,
        account_id: str,
        external_id: str,
        partial: dict[str, Any],
        field_mask: list[str],
    ) -> None:
        update = {"resourceName": self._resource_name(account_id, external_id), **partial}
        await self._mutate(
            access_token,
            account_id,
            {"update": update, "updateMask": ",".join(field_mask)},
        )

    async def delete_entity(self, access_token: str, account_id: str, external_id: str) -> None:
        await self._mutate(
            access_token, account_id, {"remove": self._resource_name(account_id, external_id)}
        )

    def _error_fields(self, body: dict[str, Any]) -> list[str]:
        fields = []
        error = body.get("error")
        if not isinstance(error, dict):
            return fields
        for detail in error.get("details", []):
            for failure in detail.get("errors", []):
                elements = (failure.get("location") or {}).get("fieldPathElements", [])
                names = [e.get("fieldName") for e in elements if e.get("fieldName")]
                if names:
                    fields.append(".".join(names))
        return fields
