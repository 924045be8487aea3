"""Adaptive rate limiting with a circuit breaker.

One limiter is shared by every task in an archive run. Rate-limit signals
halve the concurrency budget and compute a backoff; three of them open the
circuit, pausing new work until the backoff deadline passes. Successes after
a quiet period grow the budget back in 0.1 steps.
"""

import asyncio
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from .errors import RateLimitError

logger = logging.getLogger(__name__)

RECOVERY_QUIET_PERIOD = 30.0  # seconds without a rate limit before ramping up
RECOVERY_STEP = 0.1
CIRCUIT_THRESHOLD = 3


@dataclass
class BackoffDecision:
    should_pause: bool
    delay: float  # seconds


class RateLimiter:
    def __init__(
        self,
        initial_concurrency: int,
        min_concurrency: int = 1,
        max_concurrency: int | None = None,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._concurrency = float(initial_concurrency)
        self.min_concurrency = min_concurrency
        self.max_concurrency = max_concurrency if max_concurrency is not None else initial_concurrency
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock

        self.rate_limit_count = 0
        self._last_rate_limit: float | None = None
        self._circuit_open = False
        self._circuit_reset_at = 0.0

    @property
    def concurrency(self) -> int:
        """Current budget; the fractional ramp-up is floored on read."""
        return math.floor(self._concurrency)

    def is_circuit_open(self) -> bool:
        """Report whether new work must wait; closes the circuit once its deadline passes."""
        if self._circuit_open and self._clock() >= self._circuit_reset_at:
            logger.info("Rate limit circuit breaker reset")
            self._circuit_open = False
            self.rate_limit_count = 0
        return self._circuit_open

    def record_success(self) -> None:
        if self._last_rate_limit is not None:
            if self._clock() - self._last_rate_limit <= RECOVERY_QUIET_PERIOD:
                return
        if self._concurrency < self.max_concurrency:
            self._concurrency = min(self._concurrency + RECOVERY_STEP, float(self.max_concurrency))

    def record_rate_limit(self, error: RateLimitError | None = None) -> BackoffDecision:
        """Shrink the budget and return how long the caller should back off."""
        self.rate_limit_count += 1
        self._last_rate_limit = self._clock()

        self._concurrency = float(max(math.floor(self._concurrency / 2), self.min_concurrency))

        if error is not None and error.retry_after:
            delay = min(float(error.retry_after), self.max_delay)
        else:
            delay = min(self.base_delay * 2 ** (self.rate_limit_count - 1), self.max_delay)

        should_pause = self.rate_limit_count >= CIRCUIT_THRESHOLD
        if should_pause:
            self._circuit_open = True
            self._circuit_reset_at = self._clock() + delay
            logger.warning("Rate limit circuit breaker opened for %.1fs", delay)

        return BackoffDecision(should_pause=should_pause, delay=delay)

    async def wait_for_backoff(self, delay: float) -> None:
        await asyncio.sleep(delay)

    def reset(self) -> None:
        self.rate_limit_count = 0
        self._last_rate_limit = None
        self._circuit_open = False
        self._circuit_reset_at = 0.0

    def get_state(self) -> dict:
        since = None if self._last_rate_limit is None else self._clock() - self._last_rate_limit
        return {
            "current_concurrency": self.concurrency,
            "rate_limit_count": self.rate_limit_count,
            "circuit_open": self._circuit_open,
            "seconds_since_last_rate_limit": since,
        }
