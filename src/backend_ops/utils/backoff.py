"""Exponential backoff schedule used by the health prober and retried channel calls."""
from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff.

    The delay before attempt ``n + 1`` is ``initial_delay * multiplier ** (n - 1)``,
    capped at ``max_delay``. No delay follows the last attempt, so a policy never
    waits longer than ``max_attempts * max_delay`` in total.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")

    def delay_for(self, attempt: int) -> float:
        """Seconds to sleep after failed attempt number ``attempt`` (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        return min(self.initial_delay * self.multiplier ** (attempt - 1), self.max_delay)

    def delays(self) -> Iterator[float]:
        """Delays between consecutive attempts (``max_attempts - 1`` values)."""
        for attempt in range(1, self.max_attempts):
            yield self.delay_for(attempt)

    @property
    def max_total_delay(self) -> float:
        return sum(self.delays())

    @classmethod
    def for_health(cls, settings) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.health_max_attempts,
            initial_delay=settings.health_initial_delay,
            multiplier=settings.health_backoff_multiplier,
            max_delay=settings.health_max_delay,
        )

    @classmethod
    def for_transfer(cls, settings) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.transfer_attempts,
            initial_delay=settings.transfer_retry_delay,
            multiplier=2.0,
            max_delay=max(settings.transfer_retry_delay, 60.0),
        )
