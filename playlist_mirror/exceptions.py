"""Exceptions raised across the mirroring pipeline."""

from typing import Optional


class SyncError(Exception):
    """Base class for playlist mirroring errors."""
    pass


class CatalogError(SyncError):
    """A catalog call failed for good (fatal status, malformed payload or retries exhausted)."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthenticationError(SyncError):
    """A catalog rejected our credentials; the whole run must stop."""
    pass


class LedgerError(SyncError):
    """The idempotency ledger could not be read or written."""
    pass


class SyncCancelled(SyncError):
    """The run was cancelled while waiting."""
    pass
