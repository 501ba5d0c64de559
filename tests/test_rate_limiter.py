"""Unit tests for the token bucket and cancellation token."""

import asyncio
import threading
import time

import pytest

from playlist_mirror.cancellation import CancellationToken
from playlist_mirror.exceptions import SyncCancelled
from playlist_mirror.rate_limiter import TokenBucket


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bucket(clock):
    """5 tokens per second, bursts of 2."""
    return TokenBucket(rate=5, capacity=2, clock=clock)


class TestTokenBucket:
    """Test cases for TokenBucket."""

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            TokenBucket(rate=0, capacity=1)
        with pytest.raises(ValueError):
            TokenBucket(rate=1, capacity=0)

    def test_burst_without_waiting(self, bucket):
        """Test that up to `capacity` reservations are served immediately."""
        assert bucket.reserve() == 0.0
        assert bucket.reserve() == 0.0

    def test_deficit_wait(self, bucket):
        """Test that callers beyond the burst wait their own deficit, in order."""
        bucket.reserve()
        bucket.reserve()

        assert bucket.reserve() == pytest.approx(0.2)
        assert bucket.reserve() == pytest.approx(0.4)

    def test_refill_over_time(self, bucket, clock):
        bucket.reserve()
        bucket.reserve()

        clock.advance(0.2)

        assert bucket.reserve() == 0.0
        assert bucket.available == pytest.approx(0.0)

    def test_refill_capped_at_capacity(self, bucket, clock):
        """Test that an idle bucket never holds more than `capacity` tokens."""
        clock.advance(60)

        assert bucket.available == pytest.approx(2.0)

    def test_release_returns_token(self, bucket):
        bucket.reserve()
        bucket.reserve()
        bucket.reserve()

        bucket.release()

        assert bucket.available == pytest.approx(0.0)

    def test_acquire_immediate(self, bucket):
        token = CancellationToken()

        asyncio.run(bucket.acquire(token))

        assert bucket.available == pytest.approx(1.0)

    def test_acquire_cancelled_before_wait(self, bucket):
        """Test that a cancelled run does not consume tokens."""
        token = CancellationToken()
        token.cancel()

        with pytest.raises(SyncCancelled):
            asyncio.run(bucket.acquire(token))

        assert bucket.available == pytest.approx(2.0)

    def test_acquire_cancelled_while_waiting_releases_token(self, bucket):
        """Test that a reservation abandoned by cancellation is handed back."""
        bucket.reserve()
        bucket.reserve()
        token = CancellationToken()

        async def cancelled_sleep(seconds):
            raise SyncCancelled("Run cancelled")

        token.sleep = cancelled_sleep

        with pytest.raises(SyncCancelled):
            asyncio.run(bucket.acquire(token))

        assert bucket.available == pytest.approx(0.0)


class TestConcurrentAcquisition:
    """Test cases for many callers sharing one bucket on the real clock."""

    def test_threads_never_overdraw(self):
        """Test that concurrent acquirers beyond the burst are spread out at `rate`."""
        bucket = TokenBucket(rate=20, capacity=2)
        token = CancellationToken()
        callers = 12
        start = threading.Barrier(callers)
        finished = []
        errors = []

        def worker():
            start.wait()
            try:
                asyncio.run(bucket.acquire(token))
            except Exception as e:
                errors.append(e)
            else:
                finished.append(time.monotonic())

        began = time.monotonic()
        threads = [threading.Thread(target=worker) for _ in range(callers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert errors == []
        assert len(finished) == callers
        assert max(finished) - began >= (callers - bucket.capacity) / bucket.rate - 0.01

    def test_tasks_served_in_arrival_order(self):
        bucket = TokenBucket(rate=10, capacity=1)
        token = CancellationToken()
        order = []

        async def caller(number):
            await bucket.acquire(token)
            order.append(number)

        async def scenario():
            await asyncio.gather(*(caller(n) for n in range(5)))

        asyncio.run(scenario())

        assert order == [0, 1, 2, 3, 4]

    def test_cancelled_waiters_return_their_tokens(self):
        """Test that waiters woken by cancellation hand their reservations back."""
        bucket = TokenBucket(rate=1, capacity=1)
        token = CancellationToken()

        async def scenario():
            await bucket.acquire(token)
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, token.cancel)
            return await asyncio.gather(
                bucket.acquire(token), bucket.acquire(token), return_exceptions=True
            )

        results = asyncio.run(asyncio.wait_for(scenario(), timeout=5))

        assert all(isinstance(result, SyncCancelled) for result in results)
        # Only the first caller's token is spent; the next one waits about 1s, not 3s
        assert bucket.available == pytest.approx(0.0, abs=0.5)
        assert bucket.reserve() < 1.5


class TestCancellationToken:
    """Test cases for CancellationToken."""

    def test_initial_state(self):
        token = CancellationToken()

        assert token.cancelled is False
        token.raise_if_cancelled()

    def test_cancel(self):
        token = CancellationToken()

        token.cancel()

        assert token.cancelled is True
        with pytest.raises(SyncCancelled):
            token.raise_if_cancelled()

    def test_sleep_zero_returns(self):
        asyncio.run(CancellationToken().sleep(0))

    def test_sleep_completes(self):
        asyncio.run(CancellationToken().sleep(0.01))

    def test_sleep_interrupted_by_cancel(self):
        """Test that a pending sleep wakes up as soon as the run is cancelled."""
        token = CancellationToken()

        async def scenario():
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, token.cancel)
            await token.sleep(30)

        with pytest.raises(SyncCancelled):
            asyncio.run(asyncio.wait_for(scenario(), timeout=5))
