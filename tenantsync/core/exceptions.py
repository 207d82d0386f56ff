"""Custom exceptions for the sync engine.

The hierarchy mirrors how a failure is handled, not where it came from:

- NeedsAuthorizationError: credential missing, revoked or short of scope.
  Surfaced to the tenant with a reauthorization link, never retried.
- RetryableTransientError: timeouts, 5xx, rate limits, open circuits.
  Retried with backoff a bounded number of times, then logged for the run.
- ValidationRejectedError: the remote API refused the payload. Not retried.
- PartialItemFailure: one record in a batch is malformed. Skipped.
- ConfigurationError: required tenant configuration is missing. Run aborted.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)

_SYNC_DEGRADED = "Synchronization is temporarily degraded. It will be retried automatically."

# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "NeedsAuthorizationError": "The connection needs to be re-authorized.",
    "InvalidGrantError": "The connection was revoked. Please reconnect the account.",
    "ConfigurationError": "Synchronization is not configured for this account.",
    "ValidationRejectedError": "The platform rejected the requested change.",
    "NotFoundError": "The requested resource was not found.",
    "RetryableTransientError": _SYNC_DEGRADED,
    "RateLimitError": _SYNC_DEGRADED,
    "CircuitBreakerOpen": _SYNC_DEGRADED,
    "DatabaseError": _SYNC_DEGRADED,
    "PartialItemFailure": _SYNC_DEGRADED,
}

_DEFAULT_MESSAGE = _SYNC_DEGRADED


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, user-facing error message.

    Provider error payloads and stack traces stay in the server logs; the
    tenant only ever sees a reauthorization prompt or a generic
    "sync degraded" message.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    # Walk the MRO to find the most specific matching type
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class TenantSyncException(Exception):
    """Base exception for all sync-engine errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class NeedsAuthorizationError(TenantSyncException):
    """Credential is missing, invalid, or lacks a required scope."""

    def __init__(
        self,
        provider: str,
        message: str | None = None,
        reason: str = "unauthorized",
    ) -> None:
        """Initialize needs-authorization error.

        Args:
            provider: Provider whose credential is unusable.
            message: Optional error message.
            reason: Short machine-readable reason (unauthorized, scope_upgrade, ...).
        """
        super().__init__(
            message=message or f"Authorization required for {provider}",
            code="NEEDS_AUTHORIZATION",
            details={"provider": provider, "reason": reason},
        )
        self.provider = provider
        self.reason = reason


class InvalidGrantError(NeedsAuthorizationError):
    """The refresh credential was rejected as invalid or revoked."""

    def __init__(self, provider: str, message: str | None = None) -> None:
        """Initialize invalid grant error.

        Args:
            provider: Provider that rejected the grant.
            message: Optional error message.
        """
        super().__init__(
            provider=provider,
            message=message or f"Refresh credential rejected by {provider}",
            reason="invalid_grant",
        )
        self.code = "INVALID_GRANT"


class RetryableTransientError(TenantSyncException):
    """Network timeout, 5xx or similar failure that is safe to retry later."""

    retryable = True

    def __init__(
        self,
        service: str,
        message: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        """Initialize transient error.

        Args:
            service: Name of the external service.
            message: Optional error message.
            retry_after: Optional seconds the caller should wait before retrying.
        """
        super().__init__(
            message=message or f"Transient failure communicating with {service}",
            code="RETRYABLE_TRANSIENT",
            details={"service": service, "retry_after": retry_after},
        )
        self.service = service
        self.retry_after = retry_after


class RateLimitError(RetryableTransientError):
    """Remote rate limit exceeded (429)."""

    def __init__(self, service: str, retry_after: float | None = None) -> None:
        """Initialize rate limit error.

        Args:
            service: Name of the external service.
            retry_after: Seconds until the service accepts calls again, if known.
        """
        message = f"Rate limit exceeded for {service}"
        if retry_after is not None:
            message = f"{message}. Try again in {retry_after:g} seconds."
        super().__init__(service=service, message=message, retry_after=retry_after)
        self.code = "RATE_LIMIT_EXCEEDED"


class ValidationRejectedError(TenantSyncException):
    """Remote API rejected the payload shape or a business rule."""

    def __init__(
        self,
        service: str,
        message: str,
        fields: list[str] | None = None,
    ) -> None:
        """Initialize validation rejected error.

        Args:
            service: Name of the external service.
            message: Error message returned by the service.
            fields: Offending field names, when the service reports them.
        """
        super().__init__(
            message=message,
            code="VALIDATION_REJECTED",
            details={"service": service, "fields": fields or []},
        )
        self.service = service
        self.fields = fields or []


class PartialItemFailure(TenantSyncException):
    """A single record in a batch could not be processed."""

    def __init__(self, item_id: str | None, message: str) -> None:
        """Initialize partial item failure.

        Args:
            item_id: Remote identifier of the malformed item, if any.
            message: What was wrong with the item.
        """
        super().__init__(
            message=message,
            code="PARTIAL_ITEM_FAILURE",
            details={"item_id": item_id},
        )
        self.item_id = item_id


class ConfigurationError(TenantSyncException):
    """Required tenant configuration is missing or invalid."""

    def __init__(self, tenant_id: str, message: str) -> None:
        """Initialize configuration error.

        Args:
            tenant_id: Tenant whose configuration is incomplete.
            message: What is missing.
        """
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            details={"tenant_id": tenant_id},
        )
        self.tenant_id = tenant_id


class NotFoundError(TenantSyncException):
    """Resource not found error."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        """Initialize not found error.

        Args:
            resource: Name of the resource that was not found.
            resource_id: Optional ID of the resource.
        """
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            details={"resource": resource, "resource_id": resource_id},
        )


class DatabaseError(TenantSyncException):
    """Database operation error."""

    retryable = True

    def __init__(self, message: str = "A database error occurred") -> None:
        """Initialize database error.

        Args:
            message: Error message.
        """
        super().__init__(
            message=message,
            code="DATABASE_ERROR",
        )
