"""Single-slot request throttle.

Holds the timestamp of the last outbound call and makes the next caller
wait until ``min_interval`` seconds have passed.  Callers are served one
at a time, so concurrent fetches inside a selector batch are spaced out
rather than fired together.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger("perpscout.throttle")


class RequestThrottle:
    """Async rate limiter with a single slot.

    Args:
        min_interval: Minimum seconds between two consecutive calls.
        clock: Monotonic clock, injectable for tests.
        sleep: Coroutine used to wait, injectable for tests.
    """

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError(f"min_interval must be >= 0, got {min_interval}")
        self._min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock = asyncio.Lock()

    @property
    def min_interval(self) -> float:
        return self._min_interval

    async def wait(self) -> None:
        """Block until the slot is free, then claim it."""
        async with self._lock:
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                remaining = self._min_interval - elapsed
                if remaining > 0:
                    logger.debug("Throttling request for %.3fs", remaining)
                    await self._sleep(remaining)
            self._last_call = self._clock()
