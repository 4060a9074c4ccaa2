"""RetryPolicy: decides whether a failed attempt is re-queued, and after how long.

The base policy does not look at error categories beyond the few failures
the engine produces itself (configuration, cancellation, close). Every
provider failure, 4xx included, shares one retry path with a bounded
attempt count.
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from prompt_dispatch.models import Response
from prompt_dispatch.providers.base import NON_RETRYABLE

DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float = 0.0  # seconds

    @classmethod
    def give_up(cls) -> RetryDecision:
        return cls(retry=False)


class RetryPolicy:
    """Bounded retry with exponential backoff from the provider's base delay.

    delay = min(base * factor^(attempt-1), max_delay) + uniform(0, jitter * delay)
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_factor: float = 2.0,
        max_delay: float = 30.0,
        jitter: float = 0.2,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()

    def should_retry(self, attempt: int, response: Response, base_delay_ms: int) -> RetryDecision:
        """Decide what happens after ``attempt`` (1-based) failed with ``response``."""
        if response.ok:
            return RetryDecision.give_up()
        if response.failure_type in NON_RETRYABLE:
            return RetryDecision.give_up()
        if attempt >= self.max_attempts:
            return RetryDecision.give_up()
        return RetryDecision(retry=True, delay=self.delay_for(attempt, base_delay_ms))

    def delay_for(self, attempt: int, base_delay_ms: int) -> float:
        delay = (base_delay_ms / 1000.0) * (self.backoff_factor ** (attempt - 1))
        delay = min(delay, self.max_delay)
        if delay > 0 and self.jitter > 0:
            delay += self._rng.uniform(0, self.jitter * delay)
        return delay
