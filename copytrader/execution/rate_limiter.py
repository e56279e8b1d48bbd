"""
Per-follower call spacing.

Each follower's outbound venue calls are kept at least `min_interval_ms`
apart. The next free slot is reserved under a lock, then the caller sleeps
outside it, so only that follower's task waits and concurrent tasks for the
same follower queue up in slot order.
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict

from copytrader import constants
from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)


class CallIntervalGate:
    """Owns the follower -> last-call-time map. One instance per executor."""

    def __init__(
        self,
        min_interval_ms: int = constants.MIN_API_INTERVAL_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval_ms / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._last_call: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def acquire(self, follower_id: str) -> float:
        """
        Wait until `follower_id` may make its next call.

        Returns:
            Seconds waited (0.0 when the slot was free).
        """
        async with self._lock:
            now = self._clock()
            last = self._last_call.get(follower_id)
            scheduled = now if last is None else max(now, last + self.min_interval)
            self._last_call[follower_id] = scheduled

        wait = scheduled - now
        if wait > 0:
            logger.debug("RATE_GATE_WAIT", follower_id=follower_id, wait_seconds=round(wait, 3))
            await self._sleep(wait)
        return max(wait, 0.0)

    def last_call(self, follower_id: str) -> float | None:
        return self._last_call.get(follower_id)
