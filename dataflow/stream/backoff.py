"""
Reconnect Backoff

Bounded exponential backoff with jitter for stream reconnects.

Nominal delay for attempt n (0-based) is base_delay * factor**n, capped at
max_delay. Jitter shaves a random fraction (up to `jitter`) off the nominal
delay, so a jittered delay never exceeds the cap.
"""

import random
from dataclasses import dataclass
from typing import Callable


@dataclass
class BackoffPolicy:
    """Reconnect delay schedule"""
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2  # fraction of the nominal delay, 0..1
    degraded_after: int = 5  # consecutive failures before data is flagged stale

    def __post_init__(self):
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError(
                f"Invalid backoff bounds: base_delay={self.base_delay}, max_delay={self.max_delay}"
            )
        if self.factor < 1:
            raise ValueError(f"Backoff factor must be >= 1, got {self.factor}")
        if not 0 <= self.jitter < 1:
            raise ValueError(f"Backoff jitter must be in [0, 1), got {self.jitter}")
        if self.degraded_after < 1:
            raise ValueError(f"degraded_after must be >= 1, got {self.degraded_after}")

    def nominal_delay(self, attempt: int) -> float:
        """Un-jittered delay before reconnect attempt `attempt`"""
        if attempt < 0:
            raise ValueError(f"Attempt must be non-negative, got {attempt}")
        # Cap the exponent so huge attempt counts don't overflow
        exponent = min(attempt, 64)
        return min(self.max_delay, self.base_delay * self.factor ** exponent)

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Jittered delay before reconnect attempt `attempt`"""
        nominal = self.nominal_delay(attempt)
        return nominal * (1 - self.jitter * rng())
