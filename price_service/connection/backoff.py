# Backoff Policy - Reconnect Delays
# Exponential delay between consecutive reconnect attempts

"""
Backoff Module

Responsibilities:
- Map a failed attempt count to a wait duration
- Exponential growth: base_delay * 2^attempt
- Optional cap on the maximum delay
"""

from dataclasses import dataclass
from typing import Optional

DEFAULT_BASE_DELAY = 0.1
DEFAULT_MAX_DELAY = 60.0

# 2^62 * any sane base delay is far past any cap; keeps the float finite
_MAX_EXPONENT = 62


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff policy

    Attributes:
        base_delay: Delay unit in seconds (must be > 0)
        max_delay: Upper bound in seconds, or None for no cap
    """
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: Optional[float] = DEFAULT_MAX_DELAY

    def __post_init__(self):
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.max_delay is not None and self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def delay(self, attempt: int) -> float:
        """
        Wait duration before the given attempt

        Args:
            attempt: Number of consecutive failures so far (>= 1)

        Returns:
            Delay in seconds, always > 0 and non-decreasing in attempt
        """
        if attempt < 1:
            raise ValueError("attempt must be >= 1")

        delay = self.base_delay * (2 ** min(attempt, _MAX_EXPONENT))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay
