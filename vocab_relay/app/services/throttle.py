from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from vocab_relay.app.core.logging import get_logger

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class ThrottleState:
    """Minimum-interval pacing shared by every call to one downstream target.

    The check, the wait and the timestamp update all happen under one lock, so
    concurrent callers are dispatched one at a time and never closer together
    than the requested interval.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_dispatch: float | None = None

    @property
    def last_dispatch(self) -> float | None:
        return self._last_dispatch

    def wait_time(self, min_interval: float) -> float:
        """Seconds until the next dispatch would be allowed (0 if now)."""
        if self._last_dispatch is None:
            return 0.0
        elapsed = self._clock() - self._last_dispatch
        return max(0.0, min_interval - elapsed)

    async def acquire(self, min_interval: float, sleep: SleepFn = asyncio.sleep) -> float:
        """Wait for this caller's turn and record the dispatch.

        Returns the number of seconds spent waiting.
        """
        async with self._lock:
            wait = self.wait_time(min_interval)
            if wait > 0:
                logger.debug("Throttle gate holding dispatch", data={"wait_s": round(wait, 3)})
                await sleep(wait)
            now = self._clock()
            # Clock may be coarse; never let the stamp move backwards.
            if self._last_dispatch is not None and now < self._last_dispatch:
                now = self._last_dispatch
            self._last_dispatch = now
            return wait
