"""Write-only unit of work.

Mutations are buffered as operation descriptors and applied together by
``commit()`` inside a single REPEATABLE READ transaction: either every
buffered effect lands or none does.  A transaction is single-use.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Iterable

from jobstore.storage.errors import CommitFault, TransactionStateError
from jobstore.storage.executor import execute_operation
from jobstore.storage.gateway import StoreGateway
from jobstore.storage.operations import (
    AddCounterDelta,
    AddJobState,
    AddToQueue,
    AddToSet,
    AggregateKind,
    ExpireJob,
    ExpireKey,
    InsertToList,
    Operation,
    PersistJob,
    PersistKey,
    RemoveFromList,
    RemoveFromSet,
    RemoveHash,
    RemoveSet,
    SetHashField,
    SetJobState,
    StateData,
    TrimList,
)
from jobstore.storage.queues import QueueProviderRegistry

logger = logging.getLogger("jobstore.transaction")


class WriteOnlyTransaction:
    def __init__(self, gateway: StoreGateway, queue_providers: QueueProviderRegistry) -> None:
        self._gateway = gateway
        self._queue_providers = queue_providers
        self._operations: list[Operation] = []
        self._committed = False

    @property
    def operations(self) -> tuple[Operation, ...]:
        """The pending batch, in execution order."""
        return tuple(self._operations)

    @property
    def committed(self) -> bool:
        return self._committed

    def _ensure_open(self) -> None:
        if self._committed:
            raise TransactionStateError("Write transaction was already committed; create a new one.")

    def enqueue(self, operation: Operation) -> None:
        """Buffer *operation*; it runs only when ``commit()`` is awaited."""
        self._ensure_open()
        self._operations.append(operation)

    async def commit(self) -> None:
        """Apply every buffered operation atomically, in enqueue order.

        Raises:
            CommitFault: an operation or the final COMMIT failed.  The
                transaction was rolled back and nothing was persisted.
        """
        self._ensure_open()
        self._committed = True

        if not self._operations:
            return

        current: Operation | None = None
        try:
            async with self._gateway.begin(self._gateway.repeatable_read) as conn:
                for current in self._operations:
                    await execute_operation(conn, current, self._queue_providers)
                current = None
        except Exception as exc:
            if current is not None:
                message = f"Could not commit transaction: {current.describe()} failed: {exc}"
            else:
                targets = ", ".join(sorted({op.target for op in self._operations}))
                message = f"Could not commit transaction touching {targets}: {exc}"
            logger.error(message)
            raise CommitFault(message, current) from exc

        logger.debug("Committed %d operation(s)", len(self._operations))

    # ── Jobs ────────────────────────────────────────────────────

    def expire_job(self, job_id: int, expire_in: timedelta) -> None:
        self.enqueue(ExpireJob(int(job_id), expire_in))

    def persist_job(self, job_id: int) -> None:
        self.enqueue(PersistJob(int(job_id)))

    def set_job_state(self, job_id: int, state: StateData) -> None:
        self.enqueue(SetJobState(int(job_id), state))

    def add_job_state(self, job_id: int, state: StateData) -> None:
        self.enqueue(AddJobState(int(job_id), state))

    def add_to_queue(self, queue: str, job_id: int) -> None:
        self.enqueue(AddToQueue(queue, int(job_id)))

    # ── Counters ────────────────────────────────────────────────

    def increment_counter(self, key: str, expire_in: timedelta | None = None) -> None:
        self.enqueue(AddCounterDelta(key, +1, expire_in))

    def decrement_counter(self, key: str, expire_in: timedelta | None = None) -> None:
        self.enqueue(AddCounterDelta(key, -1, expire_in))

    # ── Sets ────────────────────────────────────────────────────

    def add_to_set(self, key: str, value: str, score: float = 0.0) -> None:
        self.enqueue(AddToSet(key, value, score))

    def add_range_to_set(self, key: str, values: Iterable[str]) -> None:
        for value in values:
            self.enqueue(AddToSet(key, value, 0.0))

    def remove_from_set(self, key: str, value: str) -> None:
        self.enqueue(RemoveFromSet(key, value))

    def remove_set(self, key: str) -> None:
        self.enqueue(RemoveSet(key))

    def expire_set(self, key: str, expire_in: timedelta) -> None:
        self.enqueue(ExpireKey(key, AggregateKind.SET, expire_in))

    def persist_set(self, key: str) -> None:
        self.enqueue(PersistKey(key, AggregateKind.SET))

    # ── Lists ───────────────────────────────────────────────────

    def insert_to_list(self, key: str, value: str | None) -> None:
        self.enqueue(InsertToList(key, value))

    def remove_from_list(self, key: str, value: str | None) -> None:
        self.enqueue(RemoveFromList(key, value))

    def trim_list(self, key: str, keep_starting_from: int, keep_ending_at: int) -> None:
        """Keep only ranks ``keep_starting_from..keep_ending_at`` (inclusive, 0-based)."""
        if keep_starting_from < 0:
            raise ValueError(f"keep_starting_from must be >= 0, got {keep_starting_from}")
        self.enqueue(TrimList(key, keep_starting_from, keep_ending_at))

    def expire_list(self, key: str, expire_in: timedelta) -> None:
        self.enqueue(ExpireKey(key, AggregateKind.LIST, expire_in))

    def persist_list(self, key: str) -> None:
        self.enqueue(PersistKey(key, AggregateKind.LIST))

    # ── Hashes ──────────────────────────────────────────────────

    def set_range_in_hash(self, key: str, pairs: dict[str, str | None] | Iterable[tuple[str, str | None]]) -> None:
        if key is None:
            raise ValueError("key must not be None")
        items = pairs.items() if isinstance(pairs, dict) else pairs
        for field_name, value in items:
            self.enqueue(SetHashField(key, field_name, value))

    def remove_hash(self, key: str) -> None:
        self.enqueue(RemoveHash(key))

    def expire_hash(self, key: str, expire_in: timedelta) -> None:
        self.enqueue(ExpireKey(key, AggregateKind.HASH, expire_in))

    def persist_hash(self, key: str) -> None:
        self.enqueue(PersistKey(key, AggregateKind.HASH))
