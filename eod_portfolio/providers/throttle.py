"""Process-wide minimum spacing between outbound provider requests."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable


class RequestThrottle:
    """Serialize callers so consecutive requests are ``min_interval`` apart.

    Callers queue on the lock; nobody is ever rejected.
    """

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._min_interval = max(0.0, min_interval)
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_slot: float | None = None

    @property
    def min_interval(self) -> float:
        return self._min_interval

    async def wait(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._next_slot is not None and now < self._next_slot:
                await self._sleep(self._next_slot - now)
                now = self._next_slot
            self._next_slot = now + self._min_interval

    async def __aenter__(self) -> "RequestThrottle":
        await self.wait()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None


__all__ = ["RequestThrottle"]
