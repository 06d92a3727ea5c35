"""Process-wide sliding-window quota for outbound provider calls.

One instance is created per process and injected into every call path.
Waiters are served first-come first-served: the internal ``asyncio.Lock``
queues them in arrival order and only the head of the queue ever sleeps
waiting for quota.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from overachiever.sync.errors import QuotaExceeded

logger = structlog.get_logger()


@dataclass(eq=False)
class Permit:
    """Proof that ``cost`` units were granted at ``granted_at`` (limiter clock)."""

    id: int
    cost: int
    granted_at: float
    released: bool = False


class RateLimiter:
    """Grants at most ``max_units`` within any rolling ``window_seconds``."""

    def __init__(
        self,
        max_units: int,
        window_seconds: float,
        max_wait_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_units <= 0:
            raise ValueError("max_units must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_units = max_units
        self.window_seconds = window_seconds
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._grants: deque[Permit] = deque()
        self._used = 0
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self.waiting = 0
        self.granted_total = 0

    def _prune(self, now: float) -> None:
        while self._grants and now - self._grants[0].granted_at >= self.window_seconds:
            expired = self._grants.popleft()
            self._used -= expired.cost

    @property
    def available(self) -> int:
        self._prune(self._clock())
        return self.max_units - self._used

    async def acquire(self, cost: int = 1) -> Permit:
        """Suspend until ``cost`` units fit in the current window.

        Raises:
            QuotaExceeded: If the configured maximum wait elapses first.
            ValueError: If ``cost`` can never be satisfied.
        """
        if cost <= 0 or cost > self.max_units:
            raise ValueError(f"cost must be between 1 and {self.max_units}, got {cost}")

        self.waiting += 1
        try:
            if self.max_wait_seconds is None:
                return await self._acquire(cost)
            try:
                return await asyncio.wait_for(self._acquire(cost), timeout=self.max_wait_seconds)
            except asyncio.TimeoutError as e:
                logger.warning(
                    "rate_limit_quota_exceeded",
                    cost=cost,
                    max_wait_seconds=self.max_wait_seconds,
                    waiting=self.waiting,
                )
                raise QuotaExceeded(
                    f"no provider quota within {self.max_wait_seconds}s"
                ) from e
        finally:
            self.waiting -= 1

    async def _acquire(self, cost: int) -> Permit:
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if self._used + cost <= self.max_units:
                    permit = Permit(id=next(self._ids), cost=cost, granted_at=now)
                    self._grants.append(permit)
                    self._used += cost
                    self.granted_total += cost
                    return permit

                # Sleep until enough of the oldest grants leave the window
                freed = 0
                wake_at = now
                for grant in self._grants:
                    freed += grant.cost
                    wake_at = grant.granted_at + self.window_seconds
                    if self._used - freed + cost <= self.max_units:
                        break
                delay = max(wake_at - now, 0.001)
                logger.debug("rate_limit_wait", cost=cost, delay=round(delay, 3), waiting=self.waiting)
                await asyncio.sleep(delay)

    def release_early(self, permit: Permit) -> bool:
        """Refund a permit whose call never reached the provider.

        Returns False if it was already released or has left the window.
        """
        if permit.released:
            return False
        permit.released = True
        try:
            self._grants.remove(permit)
        except ValueError:
            return False
        self._used -= permit.cost
        self.granted_total -= permit.cost
        return True

    def stats(self) -> dict[str, float | int]:
        return {
            "max_units": self.max_units,
            "window_seconds": self.window_seconds,
            "available": self.available,
            "waiting": self.waiting,
        }
