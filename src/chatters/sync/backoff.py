"""Exponential backoff policy for reconnecting degraded backends."""

import random
from collections.abc import Iterator
from dataclasses import dataclass


@dataclass(frozen=True)
class BackoffPolicy:
    """Delays between reconnect attempts.

    The n-th delay is initial * multiplier**n capped at `maximum`, spread by
    +/- `jitter` (a fraction of the delay). `max_attempts` of None retries
    forever.
    """

    initial: float = 1.0
    maximum: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1
    max_attempts: int | None = None

    def __post_init__(self) -> None:
        if self.initial < 0 or self.maximum < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError(f"Backoff multiplier must be >= 1, got {self.multiplier}")
        if not 0 <= self.jitter < 1:
            raise ValueError(f"Backoff jitter must be in [0, 1), got {self.jitter}")
        if self.max_attempts is not None and self.max_attempts < 0:
            raise ValueError("max_attempts must be non-negative")

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before reconnect attempt number `attempt` (0-based)."""
        # exponent capped so the float stays finite
        base = min(self.maximum, self.initial * self.multiplier ** min(attempt, 64))
        if self.jitter and base:
            spread = base * self.jitter
            base += (rng or random).uniform(-spread, spread)
        return max(0.0, base)

    def delays(self, rng: random.Random | None = None) -> Iterator[float]:
        """Yield successive delays until the attempt budget runs out."""
        attempt = 0
        while self.max_attempts is None or attempt < self.max_attempts:
            yield self.delay(attempt, rng)
            attempt += 1
