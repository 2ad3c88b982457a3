"""Concurrency primitives for a job queue kept in a shared relational store.

Two primitives, composed by callers and independent of each other:

``DistributedLock``
    Mutual exclusion across worker processes via rows in the ``lock`` table.
    Polls with a flat 1 s retry ceiling until the timeout elapses.

``WriteOnlyTransaction``
    Buffers mutations (counters, sets, lists, hashes, job state, queue
    pushes) and applies them in one REPEATABLE READ transaction.

``JobStorage`` wires both to the configured engine.
"""

from jobstore.storage.errors import (
    CommitFault,
    DistributedLockError,
    LockReleaseError,
    LockTimeoutError,
    StorageError,
    TransactionStateError,
)
from jobstore.storage.gateway import StoreGateway
from jobstore.storage.job_storage import JobStorage
from jobstore.storage.lock import (
    DistributedLock,
    LockState,
    TransactionalAcquirePolicy,
    UpdateCountAcquirePolicy,
    acquire_lock,
    policy_for,
)
from jobstore.storage.operations import StateData
from jobstore.storage.queues import DatabaseJobQueueProvider, QueueProviderRegistry
from jobstore.storage.transaction import WriteOnlyTransaction

__all__ = [
    "CommitFault",
    "DatabaseJobQueueProvider",
    "DistributedLock",
    "DistributedLockError",
    "JobStorage",
    "LockReleaseError",
    "LockState",
    "LockTimeoutError",
    "QueueProviderRegistry",
    "StateData",
    "StorageError",
    "StoreGateway",
    "TransactionStateError",
    "TransactionalAcquirePolicy",
    "UpdateCountAcquirePolicy",
    "WriteOnlyTransaction",
    "acquire_lock",
    "policy_for",
]
