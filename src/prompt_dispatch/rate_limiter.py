"""Per-provider requests-per-minute limiter with a sliding window.

Each provider owns a deque of admission timestamps and an asyncio.Lock.
Callers queue on the lock (FIFO), so admission order within a provider
follows arrival order. The lock is held while waiting for the oldest
timestamp to leave the window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from prompt_dispatch.cancellation import CancelToken
from prompt_dispatch.models import ProviderProfile
from prompt_dispatch.providers.base import ConfigurationError

logger = logging.getLogger("prompt_dispatch")

DEFAULT_WINDOW_SECONDS = 60.0


@dataclass
class _ProviderWindow:
    """Sliding window bucket for a single provider."""

    profile: ProviderProfile
    admissions: deque[float] = field(default_factory=deque)
    _lock: asyncio.Lock | None = field(default=None, repr=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, repr=False)

    def lock(self) -> asyncio.Lock:
        """The admission lock for the running loop.

        asyncio primitives belong to one loop, so a dispatcher reused across
        ``asyncio.run`` calls gets a fresh lock per loop. Admissions persist.
        """
        loop = asyncio.get_running_loop()
        if self._lock is None or self._loop is not loop:
            self._lock = asyncio.Lock()
            self._loop = loop
        return self._lock

    @property
    def waiting(self) -> bool:
        return self._lock is not None and self._lock.locked()

    def prune(self, now: float, window: float) -> None:
        cutoff = now - window
        while self.admissions and self.admissions[0] <= cutoff:
            self.admissions.popleft()

    def wait_time(self, now: float, window: float) -> float:
        """Seconds until another admission fits; 0 if it fits now."""
        self.prune(now, window)
        if len(self.admissions) < self.profile.requests_per_minute:
            return 0.0
        return (self.admissions[0] + window) - now


class RateLimiter:
    """Admit at most ``requests_per_minute`` starts per provider per window.

    Usage:
        limiter = RateLimiter(profiles)
        admitted_at = await limiter.acquire("openai", token)
    """

    def __init__(
        self,
        profiles: dict[str, ProviderProfile],
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window_seconds
        self._clock = clock
        self._buckets: dict[str, _ProviderWindow] = {
            pid: _ProviderWindow(profile=profile) for pid, profile in profiles.items()
        }

    def _bucket(self, provider_id: str) -> _ProviderWindow:
        try:
            return self._buckets[provider_id]
        except KeyError:
            raise ConfigurationError(f"Unknown provider: {provider_id!r}") from None

    async def acquire(self, provider_id: str, token: CancelToken | None = None) -> float:
        """Suspend until the provider's window has room; return the admission time.

        Raises:
            ConfigurationError: unknown provider.
            RequestCancelledError: the token fired while waiting.
        """
        bucket = self._bucket(provider_id)
        async with bucket.lock():
            while True:
                if token is not None and token.cancelled:
                    raise token.error()
                now = self._clock()
                wait = bucket.wait_time(now, self._window)
                if wait <= 0:
                    bucket.admissions.append(now)
                    return now
                logger.info(
                    "ratelimit.wait",
                    extra={
                        "event": "ratelimit.wait",
                        "provider": provider_id,
                        "wait_seconds": round(wait, 3),
                        "requests_per_minute": bucket.profile.requests_per_minute,
                    },
                )
                if token is None:
                    await asyncio.sleep(wait)
                elif await token.sleep(wait):
                    raise token.error()

    def get_stats(self, provider_id: str) -> dict:
        """Current window usage for a provider."""
        bucket = self._bucket(provider_id)
        bucket.prune(self._clock(), self._window)
        return {
            "provider": provider_id,
            "current_rpm": len(bucket.admissions),
            "rpm_limit": bucket.profile.requests_per_minute,
            "waiting": bucket.waiting,
        }

    def get_all_stats(self) -> list[dict]:
        return [self.get_stats(pid) for pid in self._buckets]
