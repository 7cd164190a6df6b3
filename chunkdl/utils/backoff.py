"""Backoff utilities for retry policies."""

from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    With the defaults the delay after failed attempt ``n`` is
    ``min(2 ** n, 60)`` seconds.
    """

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0

    def next_delay(self, attempt: int) -> float:
        """Calculate the delay to wait after the given failed attempt (1-based)."""
        delay = self.base_delay * (self.multiplier ** max(0, attempt))
        delay = min(delay, self.max_delay)
        if self.jitter > 0:
            jitter_amt = delay * self.jitter
            delay = max(0.0, delay - jitter_amt) + random.random() * (2 * jitter_amt)
        return delay
