"""
Retry policies.

A RetryPolicy is a pure value: it decides whether a failed attempt may be
retried and how long to wait, but never sleeps or loops itself. The
transaction coordinator and the backend connection gate are the only
consumers.

Invariants:
    - Attempts are numbered from 1; attempt N may be followed by a retry
      only if N <= len(delays)
    - Non-retryable conflicts (unique violations) are never retried
    - delay_for() is deterministic given its random input
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from ..errors import BackendUnavailableError, ConflictError


@dataclass(frozen=True)
class RetryPolicy:
    """Retry schedule.

    Attributes:
        delays: Base delay in seconds before retry 1, 2, ...
        jitter: Fractional spread applied to each delay (0.2 means +/-20%)
        retry_on: Exception types eligible for retry
    """

    delays: tuple[float, ...] = ()
    jitter: float = 0.0
    retry_on: tuple[type[BaseException], ...] = (ConflictError,)

    @property
    def max_attempts(self) -> int:
        """Total attempts including the first."""
        return len(self.delays) + 1

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        """Whether attempt number `attempt` (which raised `exc`) may be retried."""
        if attempt > len(self.delays):
            return False
        if not isinstance(exc, self.retry_on):
            return False
        return getattr(exc, "retryable", True)

    def delay_for(self, attempt: int, rand: float = 0.5) -> float:
        """Delay before the retry that follows attempt `attempt`.

        Args:
            attempt: 1-based number of the attempt that just failed
            rand: Uniform sample in [0, 1); 0.5 gives the base delay
        """
        base = self.delays[min(attempt, len(self.delays)) - 1]
        return max(0.0, base * (1 + self.jitter * (2 * rand - 1)))

    @classmethod
    def for_conflicts(cls) -> RetryPolicy:
        """Lost-update retries: 3 retries at 100/250/600 ms with jitter."""
        return cls(delays=(0.1, 0.25, 0.6), jitter=0.2, retry_on=(ConflictError,))

    @classmethod
    def exponential(cls, attempts: int = 5, base_delay: float = 5.0) -> RetryPolicy:
        """Connection schedule: `attempts` tries, delay doubling from base_delay."""
        return cls(
            delays=tuple(base_delay * (2**i) for i in range(max(attempts - 1, 0))),
            jitter=0.0,
            retry_on=(BackendUnavailableError, OSError, asyncio.TimeoutError),
        )

    @classmethod
    def never(cls) -> RetryPolicy:
        """Single attempt."""
        return cls(delays=())
