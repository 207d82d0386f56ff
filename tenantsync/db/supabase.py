"""Supabase client module for database operations."""

import logging
from collections.abc import Callable
from typing import Any

from supabase import Client, create_client

from tenantsync.core.config import settings
from tenantsync.core.exceptions import DatabaseError
from tenantsync.core.resilience import CircuitBreaker, CircuitBreakerOpen

logger = logging.getLogger(__name__)

_supabase_circuit_breaker = CircuitBreaker(
    "supabase", failure_threshold=10, recovery_timeout=30.0, success_threshold=3
)


class SupabaseClient:
    """Singleton Supabase client for backend operations."""

    _client: Client | None = None

    @classmethod
    def get_client(cls) -> Client:
        """Get or create the Supabase client singleton.

        Returns:
            Initialized Supabase client.

        Raises:
            DatabaseError: If client initialization fails.
        """
        if cls._client is None:
            try:
                cls._client = create_client(
                    settings.SUPABASE_URL,
                    settings.SUPABASE_SERVICE_ROLE_KEY.get_secret_value(),
                )
                logger.info("Supabase client initialized successfully")
            except Exception as e:
                logger.exception("Failed to initialize Supabase client")
                raise DatabaseError(f"Failed to initialize database connection: {e}") from e
        return cls._client

    @classmethod
    def reset_client(cls) -> None:
        """Reset the client singleton (useful for testing)."""
        cls._client = None

    @classmethod
    def execute(
        cls,
        operation: str,
        query: Callable[[Client], Any],
        **log_context: Any,
    ) -> list[dict[str, Any]]:
        """Run a query through the circuit breaker and normalise its rows.

        Args:
            operation: Short description used in logs and error messages.
            query: Builds and executes the query against the client.
            **log_context: Extra fields for the failure log line.

        Returns:
            The response rows (a single-row response is wrapped in a list).

        Raises:
            CircuitBreakerOpen: If the database circuit is open.
            DatabaseError: If the query fails.
        """
        try:
            _supabase_circuit_breaker.check()
            response = query(cls.get_client())
            _supabase_circuit_breaker.record_success()
        except (CircuitBreakerOpen, DatabaseError):
            raise
        except Exception as e:
            _supabase_circuit_breaker.record_failure()
            logger.exception(f"Error during {operation}", extra=log_context)
            raise DatabaseError(f"Failed to {operation}: {e}") from e

        data = getattr(response, "data", None) if response is not None else None
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        return list(data)
