"""Backoff bookkeeping for a session's upstream leg."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING, Callable, Optional

if TYPE_CHECKING:
    from cryptonote_ws_proxy.config.models import ReconnectConfig


class ReconnectionScheduler:
    """
    Computes reconnection delays and counts attempts.

    ``delay = min(max_delay, base_delay * growth_factor ** min(attempt, cap_exponent))``
    plus a jitter in ``[0, max_jitter)``. Once more than ``max_attempts``
    delays have been requested the scheduler reports permanent failure.
    A successful connection resets the count.
    """

    def __init__(
        self,
        base_delay: float = 5.0,
        max_delay: float = 120.0,
        growth_factor: float = 1.5,
        cap_exponent: int = 5,
        max_jitter: float = 2.0,
        max_attempts: int = 5,
        rng: Callable[[], float] = random.random,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.growth_factor = growth_factor
        self.cap_exponent = cap_exponent
        self.max_jitter = max_jitter
        self.max_attempts = max_attempts
        self._rng = rng
        self.attempts = 0

    @classmethod
    def from_config(
        cls, config: ReconnectConfig, rng: Callable[[], float] = random.random
    ) -> "ReconnectionScheduler":
        """Create a scheduler from configuration."""
        return cls(
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            growth_factor=config.growth_factor,
            cap_exponent=config.cap_exponent,
            max_jitter=config.max_jitter,
            max_attempts=config.max_attempts,
            rng=rng,
        )

    def base_delay_for(self, attempt: int) -> float:
        """Delay before jitter for the given zero-based attempt number."""
        exponent = min(attempt, self.cap_exponent)
        return min(self.max_delay, self.base_delay * self.growth_factor**exponent)

    def next_delay(self) -> Optional[float]:
        """
        Register a new attempt and return how long to wait before it.

        Returns:
            Delay in seconds, or None if the attempt budget is exhausted.
        """
        attempt = self.attempts
        self.attempts += 1
        if self.attempts > self.max_attempts:
            return None
        return self.base_delay_for(attempt) + self._rng() * self.max_jitter

    @property
    def exhausted(self) -> bool:
        """True once every allowed attempt has been used."""
        return self.attempts >= self.max_attempts

    def reset(self) -> None:
        """Forget previous attempts after a successful connection."""
        self.attempts = 0
