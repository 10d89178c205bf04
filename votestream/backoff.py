# votestream/backoff.py
"""
Exponential backoff with jitter for transient log/store failures.

The reconciliation loop asks for a delay after every failed round trip and
resets on the next success, so an outage never turns into a busy loop.
"""
import random
from dataclasses import dataclass

INITIAL_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 30.0
BACKOFF_MULTIPLIER = 2.0
BACKOFF_JITTER = 0.1


@dataclass
class BackoffState:
    initial_delay: float = INITIAL_BACKOFF_SECONDS
    max_delay: float = MAX_BACKOFF_SECONDS
    consecutive_failures: int = 0
    total_failures: int = 0

    def record_failure(self) -> float:
        """Record a failure and return the delay to wait before retrying."""
        self.consecutive_failures += 1
        self.total_failures += 1

        delay = min(
            self.initial_delay * (BACKOFF_MULTIPLIER ** (self.consecutive_failures - 1)),
            self.max_delay,
        )
        jitter = delay * BACKOFF_JITTER * (2 * random.random() - 1)
        return max(0.0, min(delay + jitter, self.max_delay))

    def record_success(self) -> None:
        self.consecutive_failures = 0
