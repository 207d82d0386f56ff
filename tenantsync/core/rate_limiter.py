"""Per-provider outbound call limiter.

Each external provider gets one limiter shared by every tenant and job in
the process. A limiter caps the number of calls in flight and enforces a
minimum spacing between call starts. Callers over the cap wait for a slot;
nothing is rejected.
"""

import asyncio
import logging
import time
from types import TracebackType

from tenantsync.core.config import get_settings

logger = logging.getLogger(__name__)


class ProviderRateLimiter:
    """Bounded concurrency plus minimum spacing between call starts.

    Usage::

        limiter = get_rate_limiter("linkedin")
        async with limiter:
            response = await client.get(url)
    """

    def __init__(self, name: str, max_concurrent: int = 10, min_interval: float = 0.1) -> None:
        """Initialize the limiter.

        Args:
            name: Provider name, used in logs.
            max_concurrent: Maximum calls in flight at once.
            min_interval: Minimum seconds between two call starts.
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.name = name
        self.max_concurrent = max_concurrent
        self.min_interval = max(0.0, min_interval)
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._spacing_lock = asyncio.Lock()
        self._last_start: float | None = None
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        """Number of calls currently holding a slot."""
        return self._in_flight

    async def acquire(self) -> None:
        """Wait for a free slot and for the spacing window to pass."""
        await self._semaphore.acquire()
        try:
            async with self._spacing_lock:
                now = time.monotonic()
                if self._last_start is not None:
                    wait = self._last_start + self.min_interval - now
                    if wait > 0:
                        await asyncio.sleep(wait)
                self._last_start = time.monotonic()
        except BaseException:
            self._semaphore.release()
            raise
        self._in_flight += 1

    def release(self) -> None:
        """Return a slot to the pool."""
        self._in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self) -> "ProviderRateLimiter":
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


_limiters: dict[str, ProviderRateLimiter] = {}


def get_rate_limiter(provider: str) -> ProviderRateLimiter:
    """Get or create the process-wide limiter for a provider.

    Args:
        provider: Provider name.

    Returns:
        The shared limiter for that provider.
    """
    limiter = _limiters.get(provider)
    if limiter is None:
        settings = get_settings()
        limiter = ProviderRateLimiter(
            provider,
            max_concurrent=settings.PROVIDER_MAX_CONCURRENT,
            min_interval=settings.provider_min_interval_seconds,
        )
        _limiters[provider] = limiter
        logger.debug(
            "Created rate limiter",
            extra={
                "provider": provider,
                "max_concurrent": limiter.max_concurrent,
                "min_interval": limiter.min_interval,
            },
        )
    return limiter


def reset_rate_limiters() -> None:
    """Drop all limiters (useful for testing)."""
    _limiters.clear()
