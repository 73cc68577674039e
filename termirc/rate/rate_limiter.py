"""Outbound rate limiter: a token bucket in front of a FIFO queue."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Generic, TypeVar

from ..logs.logger import logger

T = TypeVar("T")


class OutboundRateLimiter(Generic[T]):
    """Paces ordinary outbound lines.

    The bucket holds up to ``burst`` tokens and gains one every ``interval``
    seconds. Queued items leave strictly in submission order, one token each.
    Protocol-critical lines are written directly by the caller and never
    enter the queue. While paused (not registered yet) nothing is released.
    """

    def __init__(
        self,
        interval: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.interval = interval
        self.burst = burst
        self.clock = clock
        self.paused = False
        self._tokens = float(burst)
        self._updated = clock()
        self._queue: deque[T] = deque()

    def __len__(self) -> int:
        return len(self._queue)

    # ----------------------------- Bucket ------------------------------ #
    def _refill(self, now: float) -> None:
        if now <= self._updated:
            return
        if self.interval == 0:
            self._tokens = float(self.burst)
        else:
            self._tokens = min(
                float(self.burst), self._tokens + (now - self._updated) / self.interval
            )
        self._updated = now

    def submit(self, item: T) -> None:
        self._queue.append(item)
        if len(self._queue) > 1 and len(self._queue) % 10 == 0:
            logger.log_event(
                "rate_limit",
                "backlog",
                level=logging.DEBUG,
                queued=len(self._queue),
                interval=self.interval,
            )

    def release(self) -> list[T]:
        """Pop every queued item whose token is available now, in order."""
        if self.paused or not self._queue:
            return []
        if self.interval == 0:
            released = list(self._queue)
            self._queue.clear()
            return released
        self._refill(self.clock())
        released = []
        # Tolerate float drift: 0.9999999 tokens is a whole token.
        while self._queue and self._tokens >= 1.0 - 1e-9:
            self._tokens = max(0.0, self._tokens - 1.0)
            released.append(self._queue.popleft())
        return released

    def next_release(self) -> float | None:
        """Absolute clock time at which the head of the queue may leave."""
        if self.paused or not self._queue:
            return None
        now = self.clock()
        self._refill(now)
        if self.interval == 0 or self._tokens >= 1.0 - 1e-9:
            return now
        return now + (1.0 - self._tokens) * self.interval

    async def wait_ready(self) -> None:
        """Sleep until :meth:`release` would return something (or nothing is queued)."""
        while (deadline := self.next_release()) is not None:
            delay = deadline - self.clock()
            if delay <= 0:
                return
            await asyncio.sleep(delay)

    # ----------------------------- Control ----------------------------- #
    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def clear(self) -> list[T]:
        """Drop the queue (on disconnect) and refill the bucket."""
        dropped = list(self._queue)
        self._queue.clear()
        self._tokens = float(self.burst)
        self._updated = self.clock()
        if dropped:
            logger.log_event(
                "rate_limit", "queue_dropped", level=logging.DEBUG, dropped=len(dropped)
            )
        return dropped
