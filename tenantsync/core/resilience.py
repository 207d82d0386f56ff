"""Resilience patterns for external service calls.

Provides:
- CircuitBreaker: circuit breaker with success_threshold for HALF_OPEN recovery
- retry: Decorator for exponential backoff with jitter

All circuit breakers are registered in a process-wide registry so the worker
can report their state on shutdown and in logs.
"""

import asyncio
import enum
import functools
import logging
import random
import threading
import time
from collections.abc import Awaitable, Callable
from typing import Any, ParamSpec, TypeVar

import httpx

from tenantsync.core.exceptions import RetryableTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")


# ---------------------------------------------------------------------------
# Circuit Breaker
# ---------------------------------------------------------------------------


class CircuitState(enum.Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(RetryableTransientError):
    """Raised when a call is attempted on an open circuit."""

    def __init__(self, service_name: str, retry_after: float = 0.0) -> None:
        super().__init__(
            service=service_name,
            message=f"Circuit breaker is open for {service_name}",
            retry_after=retry_after,
        )
        self.code = "CIRCUIT_OPEN"
        self.service_name = service_name


_circuit_breaker_registry: dict[str, "CircuitBreaker"] = {}
_registry_lock = threading.Lock()


def get_all_circuit_breakers() -> dict[str, "CircuitBreaker"]:
    """Return a snapshot of all registered circuit breakers."""
    with _registry_lock:
        return dict(_circuit_breaker_registry)


def get_circuit_breaker(service_name: str, **kwargs: Any) -> "CircuitBreaker":
    """Return the registered breaker for a service, creating it on first use."""
    with _registry_lock:
        breaker = _circuit_breaker_registry.get(service_name)
    if breaker is None:
        breaker = CircuitBreaker(service_name, **kwargs)
    return breaker


class CircuitBreaker:
    """Circuit breaker for protecting calls to external services.

    Tracks consecutive failures and opens the circuit after a threshold
    is reached.  After a recovery timeout the circuit moves to HALF_OPEN
    and allows test requests.  Only after ``success_threshold`` consecutive
    successes in HALF_OPEN does the circuit fully close again.

    Args:
        service_name: Identifier for the protected service (used in logs / registry).
        failure_threshold: Consecutive failures before opening the circuit.
        recovery_timeout: Seconds to wait in OPEN before moving to HALF_OPEN.
        success_threshold: Consecutive successes in HALF_OPEN needed to close.
    """

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 3,
    ) -> None:
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold

        self._failure_count: int = 0
        self._success_count: int = 0
        self._last_failure_time: float = 0.0
        self._state: CircuitState = CircuitState.CLOSED
        self._lock = threading.Lock()

        with _registry_lock:
            _circuit_breaker_registry[service_name] = self

    @property
    def state(self) -> CircuitState:
        """Current circuit state, accounting for recovery timeout."""
        with self._lock:
            if self._state == CircuitState.OPEN and self._last_failure_time > 0:
                elapsed = time.monotonic() - self._last_failure_time
                if elapsed >= self.recovery_timeout:
                    self._state = CircuitState.HALF_OPEN
                    self._success_count = 0
                    logger.warning(
                        "Circuit breaker HALF_OPEN for %s (testing recovery after %.1fs)",
                        self.service_name,
                        elapsed,
                    )
            return self._state

    def check(self) -> None:
        """Raise if the circuit is open (calls are not allowed)."""
        if self.state == CircuitState.OPEN:
            retry_after = max(
                0.0,
                self.recovery_timeout - (time.monotonic() - self._last_failure_time),
            )
            raise CircuitBreakerOpen(self.service_name, retry_after=retry_after)

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    logger.warning(
                        "Circuit breaker CLOSED for %s (recovered after %d successes)",
                        self.service_name,
                        self._success_count,
                    )
                    self._state = CircuitState.CLOSED
                    self._failure_count = 0
                    self._success_count = 0
            else:
                self._failure_count = 0
                self._success_count = 0

    def record_failure(self) -> None:
        """Record a failed call.  Opens circuit after threshold."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(
                    "Circuit breaker re-OPENED for %s (failed during HALF_OPEN test)",
                    self.service_name,
                )
                self._state = CircuitState.OPEN
                self._success_count = 0
            elif self._failure_count >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning(
                        "Circuit breaker OPEN for %s after %d consecutive failures",
                        self.service_name,
                        self._failure_count,
                    )
                self._state = CircuitState.OPEN

    async def call(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Execute an async function through the circuit breaker.

        Only transient failures count against the circuit; a rejected payload
        or a revoked credential says nothing about the service's health.

        Raises:
            CircuitBreakerOpen: If the circuit is open.
            Exception: Any exception raised by *func*.
        """
        self.check()
        try:
            result = await func(*args, **kwargs)
        except RetryableTransientError:
            self.record_failure()
            raise
        else:
            self.record_success()
            return result

    def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED (e.g. for tests)."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = 0.0
            logger.info("Circuit breaker RESET for %s", self.service_name)

    def to_dict(self) -> dict[str, Any]:
        """Snapshot for status logging."""
        return {
            "service": self.service_name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "success_threshold": self.success_threshold,
        }


# ---------------------------------------------------------------------------
# Retry with Exponential Backoff
# ---------------------------------------------------------------------------

RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    RetryableTransientError,
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)


def retry(
    max_retries: int = 3,
    backoff_factor: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = RETRYABLE_EXCEPTIONS,
    max_delay: float = 30.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator: retry an async function with exponential backoff + jitter.

    When the raised exception carries a ``retry_after`` hint (rate limits,
    open circuits) the wait is at least that long, still capped by
    ``max_delay``.

    Args:
        max_retries: Maximum number of retry attempts (not counting the initial call).
        backoff_factor: Multiplier for the delay between retries.
        retry_on: Tuple of exception types that trigger a retry.
        max_delay: Cap on the computed delay (seconds).

    Usage::

        @retry(max_retries=2, retry_on=(RetryableTransientError,))
        async def fetch_page():
            ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            last_exc: BaseException | None = None
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    if attempt < max_retries:
                        delay = min(backoff_factor**attempt, max_delay)
                        wait = random.uniform(0, delay)  # noqa: S311
                        hinted = getattr(exc, "retry_after", None)
                        if hinted:
                            wait = min(max(wait, float(hinted)), max_delay)
                        logger.warning(
                            "Retry %d/%d for %s after %s (waiting %.2fs)",
                            attempt + 1,
                            max_retries,
                            func.__qualname__,
                            type(exc).__name__,
                            wait,
                        )
                        await asyncio.sleep(wait)
                    else:
                        logger.error(
                            "All %d retries exhausted for %s: %s",
                            max_retries,
                            func.__qualname__,
                            type(exc).__name__,
                        )
            raise last_exc  # type: ignore[misc]

        return wrapper

    return decorator
