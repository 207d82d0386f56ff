"""Core module for tenantsync configuration and utilities."""

from tenantsync.core.config import Settings, get_settings, settings
from tenantsync.core.exceptions import (
    ConfigurationError,
    NeedsAuthorizationError,
    RetryableTransientError,
    TenantSyncException,
    ValidationRejectedError,
)

__all__ = [
    "ConfigurationError",
    "NeedsAuthorizationError",
    "RetryableTransientError",
    "Settings",
    "TenantSyncException",
    "ValidationRejectedError",
    "get_settings",
    "settings",
]
