"""Base provider interface.

Every third-party platform implements this abstract class so the token
manager, the delta sync engine and the diff/patch engine can stay
provider-agnostic. The base class owns the HTTP mechanics shared by all
providers:

- one ``httpx.AsyncClient`` with a bounded timeout
- a slot from the provider's process-wide rate limiter per call
- a per-provider circuit breaker fed by transient failures only
- mapping of HTTP results onto the sync error taxonomy
- bounded retry with backoff for idempotent reads (never for sends)
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from tenantsync.core.config import Settings, get_settings
from tenantsync.core.exceptions import (
    InvalidGrantError,
    NeedsAuthorizationError,
    NotFoundError,
    RateLimitError,
    RetryableTransientError,
    ValidationRejectedError,
)
from tenantsync.core.rate_limiter import ProviderRateLimiter, get_rate_limiter
from tenantsync.core.resilience import CircuitBreaker, get_circuit_breaker, retry
from tenantsync.integrations.domain import CredentialPurpose, Provider, TokenGrant
from tenantsync.integrations.sync_domain import PartitionKey
from tenantsync.services.campaign_models import EntitySchema

logger = logging.getLogger(__name__)

_INVALID_GRANT_CODES = {"invalid_grant", "invalid_request", "invalid_client", "unauthorized_client"}


@dataclass
class ChangePage:
    """One page of a remote change feed.

    Attributes:
        items: Raw remote items, in feed order.
        next_cursor: Continuation to persist once this page is fully processed;
            None means the feed did not issue a new one.
        has_more: Whether another page should be requested in the same run.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


@dataclass
class RemoteEntity:
    """A remote campaign projected onto local field names."""

    external_id: str
    state: dict[str, Any]
    status: str | None = None
    updated_at: datetime | None = None


def encode_cursor(data: dict[str, Any]) -> str:
    """Serialize a structured cursor into an opaque token."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def decode_cursor(token: str | None) -> dict[str, Any]:
    """Parse a token produced by ``encode_cursor``.

    A token that cannot be parsed restarts the listing from the beginning.
    """
    if not token:
        return {}
    try:
        data = json.loads(token)
    except json.JSONDecodeError:
        logger.warning("Discarding unreadable cursor; listing restarts from the beginning")
        return {}
    return data if isinstance(data, dict) else {}


def safe_json(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class BaseProvider(ABC):
    """Capability set shared by every platform: authorization plus resource access."""

    provider: Provider
    # A used refresh token is invalidated, so a refresh must never be replayed.
    rotates_refresh_token: bool = False

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        limiter: ProviderRateLimiter | None = None,
        breaker: CircuitBreaker | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.PROVIDER_TIMEOUT_SECONDS)
        )
        self._limiter = limiter or get_rate_limiter(self.provider.value)
        self._breaker = breaker or get_circuit_breaker(f"provider:{self.provider.value}")

    @property
    def name(self) -> str:
        return self.provider.value

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- Authorization boundary ----------------------------------------------

    @abstractmethod
    def authorization_url(
        self, tenant_id: str, purpose: CredentialPurpose, scopes: list[str], state: str
    ) -> str:
        """Build the URL the tenant visits to grant (or upgrade) access."""

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str, scopes: list[str]) -> TokenGrant:
        """Exchange an authorization code for tokens."""

    async def refresh(self, refresh_token: str, scopes: list[str]) -> TokenGrant:
        """Exchange a refresh token for a new access token."""
        raise NotImplementedError(f"{self.name} does not issue refresh tokens")

    async def exchange_long_lived(self, access_token: str) -> TokenGrant:
        """Swap a short-lived token for a long-lived one."""
        raise NotImplementedError(f"{self.name} has no long-lived token exchange")

    async def acquire_app_token(self, scopes: list[str]) -> TokenGrant:
        """Derive an app-only token from the client credentials."""
        raise NotImplementedError(f"{self.name} has no client-credentials grant")

    # -- Resource boundary ----------------------------------------------------

    @abstractmethod
    async def list_changes(
        self,
        access_token: str,
        partition: PartitionKey,
        cursor: str | None,
        since: datetime,
    ) -> ChangePage:
        """Fetch the next page of changes for a partition.

        Args:
            access_token: Bearer token.
            partition: Partition being synchronized.
            cursor: Saved continuation, or None for the initial window.
            since: Start of the initial window; ignored when a cursor is given.
        """

    # -- HTTP plumbing --------------------------------------------------------

    def default_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: str | None = None,
        idempotent: bool | None = None,
        token_endpoint: bool = False,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request with rate limiting, circuit breaking and error mapping.

        Reads and token calls are retried on transient failures unless the
        caller marks them non-idempotent; writes are attempted once.
        """
        if idempotent is None:
            idempotent = method.upper() in ("GET", "HEAD") or token_endpoint
        send = self._send
        if idempotent:
            send = retry(
                max_retries=self.settings.PROVIDER_MAX_RETRIES,
                retry_on=(RetryableTransientError,),
            )(self._send)
        return await send(
            method,
            url,
            access_token=access_token,
            token_endpoint=token_endpoint,
            headers=headers,
            **kwargs,
        )

    async def _send(
        self,
        method: str,
        url: str,
        *,
        access_token: str | None,
        token_endpoint: bool,
        headers: dict[str, str] | None,
        **kwargs: Any,
    ) -> httpx.Response:
        self._breaker.check()
        merged = {**self.default_headers(), **(headers or {})}
        if access_token:
            merged["Authorization"] = f"Bearer {access_token}"

        async with self._limiter:
            try:
                response = await self._client.request(method, url, headers=merged, **kwargs)
            except httpx.TimeoutException as e:
                self._breaker.record_failure()
                raise RetryableTransientError(self.name, f"{method} request timed out") from e
            except httpx.TransportError as e:
                self._breaker.record_failure()
                raise RetryableTransientError(self.name, f"{method} transport error") from e

        if response.status_code == 429 or response.status_code >= 500:
            self._breaker.record_failure()
        else:
            self._breaker.record_success()

        self._raise_for_status(response, token_endpoint=token_endpoint)
        return response

    def _raise_for_status(self, response: httpx.Response, token_endpoint: bool = False) -> None:
        status = response.status_code
        if status < 400:
            return

        body = safe_json(response)
        logger.warning(
            "Provider call failed",
            extra={"provider": self.name, "status_code": status, "path": response.request.url.path},
        )

        if status == 429:
            raise RateLimitError(self.name, retry_after=_retry_after(response))
        if status >= 500:
            raise RetryableTransientError(self.name, f"{self.name} returned HTTP {status}")
        if token_endpoint and status in (400, 401) and self._is_invalid_grant(body):
            raise InvalidGrantError(self.name)
        if status in (401, 403):
            raise NeedsAuthorizationError(
                self.name,
                reason="unauthorized" if status == 401 else "forbidden",
            )
        if status == 404:
            raise NotFoundError(f"{self.name} resource", response.request.url.path)
        raise ValidationRejectedError(
            self.name,
            self._error_message(body) or f"{self.name} rejected the request (HTTP {status})",
            fields=self._error_fields(body),
        )

    def _is_invalid_grant(self, body: dict[str, Any]) -> bool:
        error = body.get("error")
        return isinstance(error, str) and error in _INVALID_GRANT_CODES

    def _error_message(self, body: dict[str, Any]) -> str | None:
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message")
        return body.get("error_description") or body.get("message")

    def _error_fields(self, body: dict[str, Any]) -> list[str]:
        return []

    async def _token_request(
        self,
        url: str,
        data: dict[str, str],
        method: str = "POST",
        default_expires_in: int | None = None,
        requested_scopes: list[str] | None = None,
        idempotent: bool = True,
    ) -> TokenGrant:
        if method == "GET":
            response = await self._request(
                "GET", url, params=data, token_endpoint=True, idempotent=idempotent
            )
        else:
            response = await self._request(
                "POST",
                url,
                data=data,
                token_endpoint=True,
                idempotent=idempotent,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        body = safe_json(response)
        access_token = body.get("access_token")
        if not access_token:
            raise ValidationRejectedError(self.name, "Token endpoint returned no access token")

        expires_in = body.get("expires_in", default_expires_in)
        scope = body.get("scope")
        scopes = requested_scopes
        if isinstance(scope, str) and scope:
            scopes = [s for s in scope.replace(",", " ").split() if s]
        return TokenGrant(
            access_token=access_token,
            expires_in=int(expires_in) if expires_in is not None else None,
            refresh_token=body.get("refresh_token"),
            scopes=scopes,
        )


class AdPlatformProvider(BaseProvider):
    """Provider that mirrors campaigns and accepts partial updates."""

    schema: EntitySchema

    def normalize_entity(self, raw: dict[str, Any]) -> RemoteEntity:
        """Project a raw campaign onto local fields.

        Raises:
            ValueError: If the item carries no identifier.
        """
        external_id = raw.get(self.schema.remote_id_field)
        if external_id in (None, ""):
            raise ValueError("Remote campaign has no identifier")
        return RemoteEntity(
            external_id=str(external_id),
            state=self.schema.from_remote(raw),
            status=raw.get(self.schema.status_field),
            updated_at=self._remote_updated_at(raw),
        )

    def _remote_updated_at(self, raw: dict[str, Any]) -> datetime | None:
        return None

    def validate_patch(self, partial: dict[str, Any]) -> None:
        """Reject payloads the platform is known to refuse before sending them."""

    @abstractmethod
    async def create_entity(
        self, access_token: str, account_id: str, payload: dict[str, Any]
    ) -> str:
        """Create a campaign and return its external id."""

    @abstractmethod
    async def patch_entity(
        self,
        access_token: str,
        account_id: str,
        external_id: str,
        partial: dict[str, Any],
        field_mask: list[str],
    ) -> None:
        """Apply a partial update containing only the changed fields."""

    @abstractmethod
    async def delete_entity(self, access_token: str, account_id: str, external_id: str) -> None:
        """Hard-delete a campaign (only ever used for drafts)."""
