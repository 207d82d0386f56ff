"""Microsoft Graph provider: mailbox delta feeds and mail sending.

Lead ingestion reads each configured mailbox folder through the Graph
message delta endpoint. The first page of a partition is filtered to the
lookback window; after that the saved ``@odata.nextLink`` /
``@odata.deltaLink`` URL is replayed verbatim, so the cursor is simply the
link Graph handed back.

Replies go through ``POST /messages/{id}/reply``, which returns 202 with no
message id; callers resolve the sent copy from Sent Items afterwards.
"""

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote, urlencode

from tenantsync.integrations.domain import CredentialPurpose, Provider, TokenGrant
from tenantsync.integrations.providers.base import BaseProvider, ChangePage
from tenantsync.integrations.sync_domain import PartitionKey

logger = logging.getLogger(__name__)

_MESSAGE_FIELDS = (
    "id,conversationId,subject,bodyPreview,body,from,toRecipients,"
    "receivedDateTime,createdDateTime,isRead"
)
_APP_SCOPE = "https://graph.microsoft.com/.default"


class MicrosoftGraphProvider(BaseProvider):
    """Mailbox access through Microsoft Graph."""

    provider = Provider.MICROSOFT

    @property
    def _graph_url(self) -> str:
        return self.settings.MICROSOFT_GRAPH_URL.rstrip("/")

    @property
    def _oauth_base(self) -> str:
        login = self.settings.MICROSOFT_LOGIN_URL.rstrip("/")
        return f"{login}/{self.settings.MICROSOFT_DIRECTORY_ID}/oauth2/v2.0"

    def _mailbox_url(self, mailbox: str) -> str:
        return f"{self._graph_url}/users/{quote(mailbox)}"

    def _client_fields(self) -> dict[str, str]:
        return {
            "client_id": self.settings.MICROSOFT_CLIENT_ID,
            "client_secret": self.settings.MICROSOFT_CLIENT_SECRET.get_secret_value(),
        }

    # -- Authorization --------------------------------------------------------

    def authorization_url(
        self, tenant_id: str, purpose: CredentialPurpose, scopes: list[str], state: str
    ) -> str:
        if purpose == CredentialPurpose.SECONDARY_INGESTION:
            # App-only permissions are granted once by a directory admin.
            query = {
                "client_id": self.settings.MICROSOFT_CLIENT_ID,
                "redirect_uri": self.settings.OAUTH_REDIRECT_BASE_URL,
                "state": state,
            }
            login = self.settings.MICROSOFT_LOGIN_URL.rstrip("/")
            return f"{login}/{self.settings.MICROSOFT_DIRECTORY_ID}/adminconsent?{urlencode(query)}"

        query = {
            "client_id": self.settings.MICROSOFT_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.settings.OAUTH_REDIRECT_BASE_URL,
            "response_mode": "query",
            "scope": " ".join(scopes),
            "state": state,
            "prompt": "consent",
        }
        return f"{self._oauth_base}/authorize?{urlencode(query)}"

    async def exchange_code(self, code: str, redirect_uri: str, scopes: list[str]) -> TokenGrant:
        return await self._token_request(
            f"{self._oauth_base}/token",
            {
                **self._client_fields(),
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "scope": " ".join(scopes),
            },
            requested_scopes=scopes,
        )

    async def refresh(self, refresh_token: str, scopes: list[str]) -> TokenGrant:
        grant = await self._token_request(
            f"{self._oauth_base}/token",
            {
                **self._client_fields(),
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": " ".join(scopes),
            },
            requested_scopes=scopes,
        )
        # Microsoft usually rotates the refresh token but may omit it.
        grant.refresh_token = grant.refresh_token or refresh_token
        return grant

    async def acquire_app_token(self, scopes: list[str]) -> TokenGrant:
        grant = await self._token_request(
            f"{self._oauth_base}/token",
            {
                **self._client_fields(),
                "grant_type": "client_credentials",
                "scope": _APP_SCOPE,
            },
        )
        # App tokens carry roles, not scopes; record what the app was granted for.
        grant.scopes = list(scopes)
        return grant

    # -- Mail -----------------------------------------------------------------

    async def list_changes(
        self,
        access_token: str,
        partition: PartitionKey,
        cursor: str | None,
        since: datetime,
    ) -> ChangePage:
        headers = {"Prefer": f"odata.maxpagesize={self.settings.SYNC_PAGE_SIZE}"}
        if cursor:
            response = await self._request("GET", cursor, access_token=access_token, headers=headers)
        else:
            folder = partition.folder or "inbox"
            url = f"{self._mailbox_url(partition.account)}/mailFolders/{quote(folder)}/messages/delta"
            params = {
                "$select": _MESSAGE_FIELDS,
                "$filter": f"receivedDateTime ge {since.strftime('%Y-%m-%dT%H:%M:%SZ')}",
            }
            response = await self._request(
                "GET", url, access_token=access_token, headers=headers, params=params
            )

        body = response.json()
        items = [item for item in body.get("value", []) if "@removed" not in item]
        next_link = body.get("@odata.nextLink")
        delta_link = body.get("@odata.deltaLink")
        logger.debug(
            "Fetched delta page",
            extra={
                "partition": str(partition),
                "item_count": len(items),
                "has_more": bool(next_link),
            },
        )
        return ChangePage(items=items, next_cursor=next_link or delta_link, has_more=bool(next_link))

    async def list_mail_folders(self, access_token: str, mailbox: str) -> list[dict[str, Any]]:
        response = await self._request(
            "GET",
            f"{self._mailbox_url(mailbox)}/mailFolders",
            access_token=access_token,
            params={"$top": "100", "$select": "id,displayName,wellKnownName"},
        )
        return response.json().get("value", [])

    async def list_conversation_messages(
        self, access_token: str, mailbox: str, conversation_id: str
    ) -> list[dict[str, Any]]:
        """All messages of one conversation across folders, oldest first."""
        response = await self._request(
            "GET",
            f"{self._mailbox_url(mailbox)}/messages",
            access_token=access_token,
            params={
                "$filter": f"conversationId eq '{conversation_id}'",
                "$select": _MESSAGE_FIELDS,
                "$top": "50",
            },
        )
        messages = response.json().get("value", [])
        return sorted(messages, key=lambda m: m.get("receivedDateTime") or m.get("createdDateTime") or "")

    async def list_sent_items(
        self, access_token: str, mailbox: str, top: int = 10
    ) -> list[dict[str, Any]]:
        """Most recently sent messages, newest first."""
        response = await self._request(
            "GET",
            f"{self._mailbox_url(mailbox)}/mailFolders/sentitems/messages",
            access_token=access_token,
            params={
                "$top": str(top),
                "$orderby": "createdDateTime desc",
                "$select": "id,conversationId,subject,toRecipients,createdDateTime",
            },
        )
        return response.json().get("value", [])

    async def reply_to_message(
        self, access_token: str, mailbox: str, message_id: str, body_html: str
    ) -> None:
        """Reply in-thread. Graph accepts with 202 and returns no message id."""
        await self._request(
            "POST",
            f"{self._mailbox_url(mailbox)}/messages/{quote(message_id)}/reply",
            access_token=access_token,
            json={"comment": body_html},
        )

    async def send_mail(
        self,
        access_token: str,
        mailbox: str,
        recipient: str,
        subject: str,
        body_html: str,
    ) -> None:
        """Send a new message and keep a copy in Sent Items."""
        await self._request(
            "POST",
            f"{self._mailbox_url(mailbox)}/sendMail",
            access_token=access_token,
            json={
                "message": {
                    "subject": subject,
                    "body": {"contentType": "HTML", "content": body_html},
                    "toRecipients": [{"emailAddress": {"address": recipient}}],
                },
                "saveToSentItems": True,
            },
        )
