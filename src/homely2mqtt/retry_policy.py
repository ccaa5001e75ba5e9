"""Reconnect backoff for the Homely event channel.

Exponential backoff with jitter, capped at a maximum delay so that a long
outage settles into a steady retry cadence instead of growing without bound.
"""

from __future__ import annotations

import random


class RetryPolicy:
    """Exponential backoff retry policy with jitter.

    Jitter spreads reconnects out so many bridges restarted together do not
    hammer the vendor at the same instant.
    """

    def __init__(
        self,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 300.0,
        jitter_factor: float = 0.1,
        max_attempts: int = 0,
    ):
        """Initialize retry policy.

        Args:
            base_delay_seconds: Delay before the first retry
            max_delay_seconds: Maximum delay cap
            jitter_factor: Jitter as fraction of delay (0.1 = 10%)
            max_attempts: Consecutive failures allowed before giving up (0 = unlimited)
        """
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_factor = jitter_factor
        self.max_attempts = max_attempts

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt.

        Formula: min(base_delay * 2**attempt, max_delay) + jitter

        Args:
            attempt: Retry attempt number (0-indexed, so attempt=0 is first retry)

        Returns:
            Delay in seconds
        """
        # 2**attempt overflows float for very large attempt counts
        exponent = min(attempt, 32)
        delay = min(self.base_delay_seconds * (2**exponent), self.max_delay_seconds)

        jitter = random.uniform(0, delay * self.jitter_factor)
        return delay + jitter

    def exhausted(self, attempt: int) -> bool:
        """Return True once `attempt` consecutive failures exceed the budget."""
        return self.max_attempts > 0 and attempt >= self.max_attempts

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(base_delay={self.base_delay_seconds}s, "
            f"max_delay={self.max_delay_seconds}s, "
            f"jitter_factor={self.jitter_factor}, "
            f"max_attempts={self.max_attempts})"
        )
