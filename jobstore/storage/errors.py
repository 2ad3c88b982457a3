"""Failure signals raised by the distributed lock and the write transaction."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from jobstore.storage.operations import Operation


class StorageError(Exception):
    """Base class for every error raised by the storage layer."""


class DistributedLockError(StorageError):
    """Base class for lock failures; always carries the resource name."""

    def __init__(self, resource: str, message: str):
        self.resource = resource
        super().__init__(message)


class LockTimeoutError(DistributedLockError):
    """Raised when a lock could not be placed before the timeout elapsed."""

    def __init__(self, resource: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            resource,
            f"Could not place a lock on the resource '{resource}': "
            f"Lock timeout ({timeout:g}s).",
        )


class LockReleaseError(DistributedLockError):
    """Raised when the lock row was already gone at release time."""

    def __init__(self, resource: str, reason: str = "Lock does not exist."):
        super().__init__(
            resource,
            f"Could not release a lock on the resource '{resource}'. {reason}",
        )


class CommitFault(StorageError):
    """Raised when a write transaction could not be committed.

    Nothing from the batch was persisted.  ``operation`` is the descriptor
    that failed, or None when the final COMMIT itself was rejected.
    """

    def __init__(self, message: str, operation: "Operation | None" = None):
        self.operation = operation
        super().__init__(message)


class TransactionStateError(StorageError):
    """Raised when a write transaction is used after it was committed."""
