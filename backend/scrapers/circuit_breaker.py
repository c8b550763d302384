"""Circuit breaker for the upstream schedule page.

A single global breaker: when the site starts blocking or the browser keeps
crashing, every route fails the same way. After N consecutive failures the
breaker opens and rejects new attempts until the cooldown expires.
"""

import time
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Consecutive-failure breaker with a fixed cooldown."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self.failures = 0
        self.tripped_until = 0.0
        self.last_error: Optional[str] = None

    def is_open(self) -> bool:
        return self._clock() < self.tripped_until

    def remaining_seconds(self) -> float:
        return max(0.0, self.tripped_until - self._clock())

    def record_failure(self, error: Optional[str] = None):
        """Count a failed attempt; may trip the breaker."""
        self.failures += 1
        self.last_error = error
        logger.warning(f"Circuit breaker failure {self.failures}/{self.failure_threshold}")
        if self.failures >= self.failure_threshold:
            self.trip()

    def trip(self):
        self.tripped_until = self._clock() + self.cooldown_seconds
        logger.error(
            f"Circuit OPENED after {self.failures} consecutive failures. "
            f"Pausing scrapes for {self.cooldown_seconds / 60:.0f} minutes. Last error: {self.last_error}"
        )

    def record_success(self):
        """Reset the breaker after a successful attempt."""
        if self.failures > 0 or self.tripped_until:
            logger.info("Circuit breaker reset after successful scrape")
        self.failures = 0
        self.tripped_until = 0.0
        self.last_error = None

    def get_status(self) -> dict:
        return {
            'state': 'open' if self.is_open() else 'closed',
            'failures': self.failures,
            'failure_threshold': self.failure_threshold,
            'remaining_seconds': round(self.remaining_seconds()),
            'last_error': self.last_error,
        }
