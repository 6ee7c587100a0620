from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RateLimitState:
    last_request_ms: int | None
    min_interval_ms: int


def _now_ms() -> int:
    return int(time.monotonic() * 1000)


class MinIntervalRateLimiter:
    """Token-less throttle: every call waits until ``min_interval_ms`` has passed
    since the previous call started.

    One instance belongs to one REST client and lives as long as the client.
    Concurrent callers are serialized through a lock so each of them observes
    the timestamp written by the caller before it. A wait never exceeds one
    interval, even if the clock steps backwards.
    """

    def __init__(
        self,
        min_interval_ms: int = 1000,
        *,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.state = RateLimitState(last_request_ms=None, min_interval_ms=max(0, min_interval_ms))
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """Suspend until the next call may start; return the waited seconds."""
        async with self._lock:
            waited = 0.0
            last = self.state.last_request_ms
            if last is not None:
                elapsed = max(0, self._clock() - last)
                if elapsed < self.state.min_interval_ms:
                    waited = (self.state.min_interval_ms - elapsed) / 1000.0
                    logger.debug("Rate limiting: waiting %dms", int(waited * 1000))
                    await self._sleep(waited)
            self.state.last_request_ms = self._clock()
            return waited
