"""Meta Marketing API provider for ad campaigns.

Meta issues no refresh tokens. A short-lived user token from the code
exchange is swapped for a long-lived one (about 60 days) with the
``fb_exchange_token`` grant; the same exchange is repeated near expiry.

Campaign listing uses Graph ``after`` cursors filtered on ``updated_time``.
"""

import json
import logging
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlencode

import httpx

from tenantsync.core.exceptions import RateLimitError, ValidationRejectedError
from tenantsync.integrations.domain import CredentialPurpose, Provider, TokenGrant
from tenantsync.integrations.providers.base import (
    AdPlatformProvider,
    ChangePage,
    decode_cursor,
    encode_cursor,
    safe_json,
)
from tenantsync.integrations.sync_domain import PartitionKey
from tenantsync.services.campaign_models import META_CAMPAIGN_SCHEMA

logger = logging.getLogger(__name__)

# Graph error codes that signal throttling even when the HTTP status is 400
_THROTTLE_CODES = {4, 17, 32, 613, 80004}
_OAUTH_ERROR_CODE = 190
_DEFAULT_EXPIRES_IN = 3600
_CAMPAIGN_FIELDS = (
    "id,name,status,objective,buying_type,special_ad_categories,daily_budget,"
    "lifetime_budget,bid_strategy,spend_cap,start_time,stop_time,updated_time"
)


class MetaAdsProvider(AdPlatformProvider):
    """Meta ad campaigns under ``/act_{id}/campaigns``."""

    provider = Provider.META
    schema = META_CAMPAIGN_SCHEMA

    @property
    def _graph_url(self) -> str:
        return f"https://graph.facebook.com/{self.settings.META_GRAPH_VERSION}"

    def _client_fields(self) -> dict[str, str]:
        return {
            "client_id": self.settings.META_APP_ID,
            "client_secret": self.settings.META_APP_SECRET.get_secret_value(),
        }

    # -- Authorization --------------------------------------------------------

    def authorization_url(
        self, tenant_id: str, purpose: CredentialPurpose, scopes: list[str], state: str
    ) -> str:
        query = {
            "client_id": self.settings.META_APP_ID,
            "redirect_uri": self.settings.OAUTH_REDIRECT_BASE_URL,
            "scope": ",".join(scopes),
            "state": state,
            "response_type": "code",
        }
        return (
            f"https://www.facebook.com/{self.settings.META_GRAPH_VERSION}/dialog/oauth?"
            f"{urlencode(query)}"
        )

    async def exchange_code(self, code: str, redirect_uri: str, scopes: list[str]) -> TokenGrant:
        short_lived = await self._token_request(
            f"{self._graph_url}/oauth/access_token",
            {**self._client_fields(), "redirect_uri": redirect_uri, "code": code},
            method="GET",
            default_expires_in=_DEFAULT_EXPIRES_IN,
            requested_scopes=scopes,
        )
        grant = await self.exchange_long_lived(short_lived.access_token)
        grant.scopes = short_lived.scopes
        return grant

    async def exchange_long_lived(self, access_token: str) -> TokenGrant:
        return await self._token_request(
            f"{self._graph_url}/oauth/access_token",
            {
                **self._client_fields(),
                "grant_type": "fb_exchange_token",
                "fb_exchange_token": access_token,
            },
            method="GET",
            default_expires_in=_DEFAULT_EXPIRES_IN,
        )

    def _is_invalid_grant(self, body: dict[str, Any]) -> bool:
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("code") == _OAUTH_ERROR_CODE or error.get("type") == "OAuthException"
        return super()._is_invalid_grant(body)

    def _raise_for_status(self, response: httpx.Response, token_endpoint: bool = False) -> None:
        if response.status_code == 400:
            error = safe_json(response).get("error")
            if isinstance(error, dict) and error.get("code") in _THROTTLE_CODES:
                raise RateLimitError(self.name)
        super()._raise_for_status(response, token_endpoint=token_endpoint)

    def _error_fields(self, body: dict[str, Any]) -> list[str]:
        error = body.get("error")
        if not isinstance(error, dict):
            return []
        blame = (error.get("error_data") or {}).get("blame_field_specs") or []
        return [".".join(str(p) for p in spec) for spec in blame if spec]

    # -- Campaigns ------------------------------------------------------------

    def _remote_updated_at(self, raw: dict[str, Any]) -> datetime | None:
        value = raw.get("updated_time")
        if not value:
            return None
        # Graph renders offsets without a colon, e.g. 2024-05-01T10:00:00+0000
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")

    async def list_changes(
        self,
        access_token: str,
        partition: PartitionKey,
        cursor: str | None,
        since: datetime,
    ) -> ChangePage:
        state = decode_cursor(cursor)
        listing_started = state.get("listing_started") or int(datetime.now(UTC).timestamp())
        params: dict[str, str] = {
            "fields": _CAMPAIGN_FIELDS,
            "limit": str(self.settings.SYNC_PAGE_SIZE),
        }
        if state.get("after"):
            params["after"] = state["after"]
        if state.get("since") is not None:
            params["filtering"] = json.dumps(
                [{"field": "updated_time", "operator": "GREATER_THAN", "value": state["since"]}]
            )

        response = await self._request(
            "GET",
            f"{self._graph_url}/act_{partition.account}/campaigns",
            access_token=access_token,
            params=params,
        )
        body = response.json()
        paging = body.get("paging") or {}
        after = (paging.get("cursors") or {}).get("after")
        has_more = bool(paging.get("next")) and bool(after)

        if has_more:
            next_cursor = encode_cursor(
                {"after": after, "since": state.get("since"), "listing_started": listing_started}
            )
        else:
            next_cursor = encode_cursor({"after": None, "since": listing_started})
        return ChangePage(items=body.get("data", []), next_cursor=next_cursor, has_more=has_more)

    def validate_patch(self, partial: dict[str, Any]) -> None:
        if partial.get("daily_budget") is not None and partial.get("lifetime_budget") is not None:
            raise ValidationRejectedError(
                self.name,
                "A campaign cannot have both a daily and a lifetime budget",
                fields=["daily_budget", "lifetime_budget"],
            )

    @staticmethod
    def _form(payload: dict[str, Any]) -> dict[str, str]:
        form = {}
        for key, value in payload.items():
            if isinstance(value, dict | list):
                form[key] = json.dumps(value)
            elif isinstance(value, bool):
                form[key] = "true" if value else "false"
            elif value is None:
                form[key] = ""
            else:
                form[key] = str(value)
        return form

    async def create_entity(
        self, access_token: str, account_id: str, payload: dict[str, Any]
    ) -> str:
        response = await self._request(
            "POST",
            f"{self._graph_url}/act_{account_id}/campaigns",
            access_token=access_token,
            data=self._form(payload),
        )
        external_id = response.json().get("id")
        if not external_id:
            raise ValidationRejectedError(self.name, "Meta did not return a campaign id")
        return str(external_id)

    async def patch_entity(
        self,
        access_token: str,
        account_id: str,
        external_id: str,
        partial: dict[str, Any],
        field_mask: list[str],
    ) -> None:
        await self._request(
            "POST",
            f"{self._graph_url}/{external_id}",
            access_token=access_token,
            data=self._form(partial),
        )

    async def delete_entity(self, access_token: str, account_id: str, external_id: str) -> None:
        await self._request(
            "DELETE",
            f"{self._graph_url}/{external_id}",
            access_token=access_token,
        )
