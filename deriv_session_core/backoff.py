"""Reconnect backoff policy."""

from __future__ import annotations

import random


class ExponentialBackoff:
    """Doubling delay with a cap and proportional jitter.

    The n-th consecutive failure waits ``min(base * 2**n, cap)`` plus up to
    ``jitter`` of that delay at random, never exceeding the cap.
    """

    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        *,
        jitter: float = 0.2,
        rng: random.Random | None = None,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng or random.Random()
        self.attempt = 0

    def next_delay(self) -> float:
        """Return the delay for the next attempt and advance the counter."""
        delay = min(self.base_delay * (2**self.attempt), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * self._rng.random()
        self.attempt += 1
        return min(delay, self.max_delay)

    def reset(self) -> None:
        self.attempt = 0
