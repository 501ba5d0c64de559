"""Token bucket rate limiter shared by all calls to one catalog."""

import threading
import time
from typing import Callable

from playlist_mirror.cancellation import CancellationToken
from playlist_mirror.exceptions import SyncCancelled


class TokenBucket:
    """
    Token bucket allowing bursts up to `capacity`, refilled at `rate` tokens per second.

    Each acquirer reserves its token under the lock, letting the balance go
    negative, and then waits out its own deficit outside the lock. Callers are
    therefore served in arrival order and the bucket is never over-drawn, whether
    they run on one event loop or on several threads.
    """

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")

        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._tokens = float(capacity)
        self._updated_at = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float):
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._updated_at = now

    def reserve(self) -> float:
        """
        Take one token, possibly on credit.

        Returns:
            Seconds the caller must wait before using the token (0 if available now)
        """
        with self._lock:
            self._refill(self._clock())
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate

    def release(self):
        """Hand back a reserved token that will not be used."""
        with self._lock:
            self._refill(self._clock())
            self._tokens = min(float(self.capacity), self._tokens + 1)

    @property
    def available(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens

    async def acquire(self, cancel_token: CancellationToken):
        """
        Block until a token is available.

        Raises:
            SyncCancelled: If the run is cancelled while waiting; the token is returned
        """
        cancel_token.raise_if_cancelled()
        wait = self.reserve()
        if wait <= 0:
            return
        try:
            await cancel_token.sleep(wait)
        except SyncCancelled:
            self.release()
            raise
