"""Async token-bucket rate limiter for upstream calls.

One bucket is shared by every request to the metadata provider, so
concurrent fetches draw from a single budget.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class AsyncTokenBucket:
    """Token bucket rate limiter.

    - Tokens are added at a fixed rate (refill_rate per second)
    - Requests consume tokens from the bucket
    - If no tokens are available, acquire() sleeps until they refill
    - Maximum tokens in bucket is capped at capacity

    A refill_rate of 0 disables limiting.
    """

    capacity: float
    refill_rate: float  # tokens per second
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    _tokens: float = field(init=False)
    _last_refill: float = field(init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        self._tokens = self.capacity
        self._last_refill = self.clock()

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = self.clock()
        elapsed = now - self._last_refill
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take tokens if available right now, without waiting."""
        if self.refill_rate <= 0:
            return True
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: float = 1.0) -> float:
        """Seconds until ``tokens`` would be available (0 if available now)."""
        if self.refill_rate <= 0:
            return 0.0
        self._refill()
        if self._tokens >= tokens:
            return 0.0
        return (tokens - self._tokens) / self.refill_rate

    async def acquire(self, tokens: float = 1.0) -> None:
        """Wait until ``tokens`` can be taken from the bucket."""
        if self.refill_rate <= 0:
            return
        # Serialize waiters so they are served in arrival order
        async with self._lock:
            while not self.try_acquire(tokens):
                await asyncio.sleep(self.wait_time(tokens))

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self._tokens


## Tests


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_token_bucket_basic():
    clock = _FakeClock()
    bucket = AsyncTokenBucket(capacity=5.0, refill_rate=1.0, clock=clock)
    assert bucket.available_tokens == 5.0

    assert bucket.try_acquire(3.0) is True
    assert bucket.available_tokens == 2.0
    assert bucket.try_acquire(3.0) is False


def test_token_bucket_refill_and_wait_time():
    clock = _FakeClock()
    bucket = AsyncTokenBucket(capacity=2.0, refill_rate=2.0, clock=clock)
    assert bucket.try_acquire(2.0) is True
    assert bucket.wait_time(1.0) == 0.5

    clock.now += 0.5
    assert bucket.wait_time(1.0) == 0.0
    assert bucket.try_acquire(1.0) is True


def test_token_bucket_capped_at_capacity():
    clock = _FakeClock()
    bucket = AsyncTokenBucket(capacity=2.0, refill_rate=10.0, clock=clock)
    clock.now += 60
    assert bucket.available_tokens == 2.0


def test_token_bucket_disabled():
    bucket = AsyncTokenBucket(capacity=1.0, refill_rate=0.0)
    for _ in range(10):
        assert bucket.try_acquire() is True
    asyncio.run(bucket.acquire(5.0))


def test_token_bucket_acquire_waits_for_refill():
    bucket = AsyncTokenBucket(capacity=1.0, refill_rate=100.0)

    async def run() -> float:
        await bucket.acquire()
        started = time.monotonic()
        await bucket.acquire()
        return time.monotonic() - started

    assert asyncio.run(run()) >= 0.005
