import asyncio

import pytest

from booking_engine.rate_limiter import SlidingWindowRateLimiter


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def limiter_with(fake, max_requests=3, window=10.0):
    return SlidingWindowRateLimiter(max_requests, window, clock=fake.clock, sleep=fake.sleep)


@pytest.mark.asyncio
async def test_requests_under_the_limit_do_not_wait():
    fake = FakeTime()
    limiter = limiter_with(fake)

    waits = [await limiter.acquire() for _ in range(3)]

    assert waits == [0.0, 0.0, 0.0]
    assert fake.sleeps == []


@pytest.mark.asyncio
async def test_full_window_suspends_until_oldest_request_leaves():
    fake = FakeTime()
    limiter = limiter_with(fake)
    await limiter.acquire()
    fake.now = 4.0
    await limiter.acquire()
    await limiter.acquire()

    waited = await limiter.acquire()

    assert waited == pytest.approx(6.0)
    assert fake.sleeps == [pytest.approx(6.0)]
    assert limiter.snapshot()["inWindow"] == 3


@pytest.mark.asyncio
async def test_waiters_are_served_in_order_and_never_rejected():
    fake = FakeTime()
    limiter = limiter_with(fake, max_requests=1, window=5.0)
    order = []

    async def worker(name):
        await limiter.acquire()
        order.append(name)

    await asyncio.gather(*(worker(n) for n in ["a", "b", "c"]))

    assert order == ["a", "b", "c"]
    assert fake.now == pytest.approx(10.0)


def test_wait_time_reports_remaining_window():
    fake = FakeTime()
    limiter = limiter_with(fake, max_requests=1, window=5.0)
    asyncio.run(limiter.acquire())
    fake.now = 2.0
    assert limiter.wait_time() == pytest.approx(3.0)


def test_rejects_non_positive_capacity():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_requests=0)
