"""Run-scoped cancellation signal shared by every blocking wait."""

import asyncio
import threading

from playlist_mirror.exceptions import SyncCancelled


class CancellationToken:
    """
    Cancellation signal for one run.

    Backed by a threading.Event so it can be triggered from any thread
    (signal handlers, executor workers) and is not bound to an event loop.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        """Trigger cancellation; waiting sleepers wake up immediately."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise SyncCancelled("Run cancelled")

    async def sleep(self, seconds: float):
        """
        Wait up to `seconds`, returning early if the run is cancelled.

        Raises:
            SyncCancelled: If cancellation is triggered before or during the wait
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return

        loop = asyncio.get_running_loop()
        if await loop.run_in_executor(None, self._event.wait, seconds):
            raise SyncCancelled("Run cancelled")
