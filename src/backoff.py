"""Exponential backoff with jitter, shared by reconnection and generation retries."""

import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class BackoffPolicy:
    """
    Capped exponential backoff plus bounded random jitter.

    delay(attempt) = min(base * 2**attempt, cap) + jitter(0, jitter_max)

    All durations are in seconds.
    """
    base: float = 1.0
    cap: float = 10.0
    jitter_max: float = 1.0
    jitter: Callable[[float, float], float] = field(default=random.uniform, repr=False)

    @classmethod
    def from_config(cls, config: dict) -> "BackoffPolicy":
        backoff_config = config.get("backoff", {})
        return cls(
            base=backoff_config.get("base_seconds", 1.0),
            cap=backoff_config.get("cap_seconds", 10.0),
            jitter_max=backoff_config.get("jitter_seconds", 1.0),
        )

    def delay(self, attempt: int) -> float:
        """
        Compute the delay before the given attempt.

        Args:
            attempt: Zero-based attempt count (negative values are treated as 0)

        Returns:
            Delay in seconds, never more than cap + jitter_max
        """
        attempt = max(attempt, 0)
        # 2**attempt overflows float for huge attempts; the cap is hit long before
        exponential = self.cap if attempt >= 64 else min(self.base * (2 ** attempt), self.cap)
        jitter = self.jitter(0, self.jitter_max) if self.jitter_max > 0 else 0.0
        return exponential + jitter
