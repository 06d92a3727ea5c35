"""Tests for the shared provider RateLimiter."""

from __future__ import annotations

import asyncio
import time

import pytest

from overachiever.sync.errors import QuotaExceeded
from overachiever.sync.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestConstruction:
    def test_rejects_non_positive_quota(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter(max_units=0, window_seconds=1)

    def test_rejects_non_positive_window(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter(max_units=1, window_seconds=0)


class TestAcquire:
    @pytest.mark.asyncio
    async def test_grants_within_quota_immediately(self) -> None:
        limiter = RateLimiter(max_units=3, window_seconds=60, clock=FakeClock())
        permits = [await limiter.acquire() for _ in range(3)]
        assert [p.id for p in permits] == [1, 2, 3]
        assert limiter.available == 0

    @pytest.mark.asyncio
    async def test_units_return_when_window_passes(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_units=2, window_seconds=10, clock=clock)
        await limiter.acquire()
        await limiter.acquire()
        assert limiter.available == 0

        clock.now += 10
        assert limiter.available == 2

    @pytest.mark.asyncio
    async def test_cost_larger_than_quota_rejected(self) -> None:
        limiter = RateLimiter(max_units=2, window_seconds=10)
        with pytest.raises(ValueError):
            await limiter.acquire(3)
        with pytest.raises(ValueError):
            await limiter.acquire(0)

    @pytest.mark.asyncio
    async def test_flood_never_exceeds_quota_in_any_window(self) -> None:
        """Twelve concurrent callers against 3 units per 0.15s."""
        window = 0.15
        limiter = RateLimiter(max_units=3, window_seconds=window)
        permits = await asyncio.gather(*(limiter.acquire() for _ in range(12)))

        grants = sorted(p.granted_at for p in permits)
        for i, start in enumerate(grants):
            in_window = [t for t in grants[i:] if t - start < window]
            assert len(in_window) <= 3
        # Twelve grants at three per window need at least three full windows
        assert grants[-1] - grants[0] >= 3 * window * 0.9

    @pytest.mark.asyncio
    async def test_waiters_served_in_arrival_order(self) -> None:
        limiter = RateLimiter(max_units=1, window_seconds=0.05)
        order: list[int] = []

        async def caller(n: int) -> None:
            await limiter.acquire()
            order.append(n)

        tasks = []
        for n in range(5):
            tasks.append(asyncio.create_task(caller(n)))
            await asyncio.sleep(0)
        await asyncio.gather(*tasks)
        assert order == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_bounded_wait_raises_quota_exceeded(self) -> None:
        limiter = RateLimiter(max_units=1, window_seconds=60, max_wait_seconds=0.05)
        await limiter.acquire()

        started = time.monotonic()
        with pytest.raises(QuotaExceeded):
            await limiter.acquire()
        assert time.monotonic() - started < 1.0
        assert limiter.waiting == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_consume_quota(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_units=1, window_seconds=60, clock=clock)
        await limiter.acquire()

        waiter = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0.01)
        assert limiter.waiting == 1
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert limiter.waiting == 0
        clock.now += 60
        assert limiter.available == 1
        # The lock was released by the cancelled waiter
        permit = await asyncio.wait_for(limiter.acquire(), timeout=1)
        assert permit.cost == 1


class TestReleaseEarly:
    @pytest.mark.asyncio
    async def test_refund_restores_unit(self) -> None:
        limiter = RateLimiter(max_units=1, window_seconds=60, clock=FakeClock())
        permit = await limiter.acquire()
        assert limiter.available == 0

        assert limiter.release_early(permit) is True
        assert limiter.available == 1
        assert limiter.granted_total == 0

    @pytest.mark.asyncio
    async def test_double_release_is_noop(self) -> None:
        limiter = RateLimiter(max_units=2, window_seconds=60, clock=FakeClock())
        permit = await limiter.acquire()
        assert limiter.release_early(permit) is True
        assert limiter.release_early(permit) is False
        assert limiter.available == 2

    @pytest.mark.asyncio
    async def test_release_after_expiry_returns_false(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(max_units=1, window_seconds=5, clock=clock)
        permit = await limiter.acquire()
        clock.now += 6
        assert limiter.available == 1
        assert limiter.release_early(permit) is False
        assert limiter.available == 1

    def test_stats_shape(self) -> None:
        limiter = RateLimiter(max_units=10, window_seconds=30)
        stats = limiter.stats()
        assert stats["max_units"] == 10
        assert stats["available"] == 10
        assert stats["waiting"] == 0
