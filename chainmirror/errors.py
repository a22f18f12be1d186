"""
errors.py - Failure taxonomy for the mirror.

Ledger-side failures (NetworkError, DecodeError, RemoteError) come from the
remote query client; store-side failures (StoreError, StoreWriteError,
NotFound) come from the storage layer. Every one of them is recoverable by
retrying: the reconciliation loops absorb them into their backoff state.
"""


class SyncError(Exception):
    """Base class for every error raised by chainmirror components."""


# ---------------------------------------------------------------------------
# Remote ledger
# ---------------------------------------------------------------------------

class LedgerError(SyncError):
    """Any failure talking to the remote ledger query service."""


class NetworkError(LedgerError):
    """Transport failure: connection refused, timeout, non-2xx status."""

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status


class DecodeError(LedgerError):
    """Response body is malformed or is missing the expected fields."""


class RemoteError(LedgerError):
    """The service answered but reported an application-level error."""

    def __init__(self, message: str, errors: list = None):
        super().__init__(message)
        self.errors = errors or []


# ---------------------------------------------------------------------------
# Durable store
# ---------------------------------------------------------------------------

class StoreError(SyncError):
    """The store could not be read."""


class StoreWriteError(StoreError):
    """An upsert failed; safe to retry because upserts are idempotent."""


class NotFound(StoreError):
    """A looked-up record is not (yet) persisted."""
