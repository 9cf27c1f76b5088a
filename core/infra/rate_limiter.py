"""
rate_limiter.py – shared async token bucket gating every outbound request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Token bucket with a steady refill rate and a burst capacity.

    * ``acquire()`` suspends the calling task until a token is available
    * waiters are served in FIFO order; accounting happens under one lock
    * cancelling a waiting task abandons its wait without spending a token
    """

    def __init__(
        self,
        rate: float,
        capacity: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._rate = float(rate)
        self._capacity = float(capacity)
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._tokens = self._capacity
        self._updated = clock()
        self._lock = asyncio.Lock()
        self.acquired = 0

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def capacity(self) -> float:
        return self._capacity

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated = now

    async def acquire(self) -> float:
        """Take one token; returns the seconds spent waiting for it."""
        waited = 0.0
        # Holding the lock while sleeping keeps later callers queued behind us.
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    self.acquired += 1
                    if waited:
                        logger.debug("Rate limiter released permit after %.3fs", waited)
                    return waited
                delay = (1.0 - self._tokens) / self._rate
                waited += delay
                await self._sleep(delay)

    async def __aenter__(self) -> "TokenBucket":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None
