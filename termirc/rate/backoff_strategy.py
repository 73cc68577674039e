"""Reconnect backoff: capped exponential delay with additive jitter."""

from __future__ import annotations

import logging
from random import SystemRandom

from ..logs.logger import logger


class ReconnectBackoff:
    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        max_attempts: int | None = None,
        jitter: float = 0.0,
        rng: SystemRandom | None = None,
    ) -> None:
        self.base = base_delay
        self.cap = max_delay
        self.max_attempts = max_attempts
        self.jitter = jitter
        self.attempt = 0
        self._rng = rng or SystemRandom()

    def base_delay(self, attempt: int) -> float:
        """Delay before jitter: ``min(base * 2**attempt, cap)``."""
        # Clamp the exponent so large attempt counts do not overflow.
        return min(self.base * (2 ** min(attempt, 64)), self.cap)

    @property
    def exhausted(self) -> bool:
        return self.max_attempts is not None and self.attempt >= self.max_attempts

    def next_delay(self) -> float:
        """Delay for the current attempt, then count the attempt."""
        delay = self.base_delay(self.attempt)
        if self.jitter > 0:
            delay += self._rng.uniform(0.0, self.jitter * delay)
        self.attempt += 1
        level = logging.WARNING if delay >= 5 else logging.DEBUG
        logger.log_event(
            "reconnect",
            "backoff",
            level=level,
            delay=round(delay, 2),
            attempt=self.attempt,
        )
        return delay

    def reset(self) -> None:
        if self.attempt:
            logger.log_event("reconnect", "backoff_reset", level=logging.DEBUG)
        self.attempt = 0
