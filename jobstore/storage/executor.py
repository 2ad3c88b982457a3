"""Interprets buffered operation descriptors against an open connection.

Every handler runs inside the caller's transaction; none of them commit.
Set membership and hash fields use a two-statement upsert: UPDATE the row
matching the natural key, INSERT only when the UPDATE matched nothing.  The
(key, value) / (key, field) unique constraints turn a concurrent duplicate
insert into an error that aborts the whole batch.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

from sqlalchemy import delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from jobstore.db.models import (
    CounterEntry,
    HashEntry,
    Job,
    JobState,
    ListEntry,
    SetEntry,
)
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

if TYPE_CHECKING:
    from jobstore.storage.queues import QueueProviderRegistry

logger = logging.getLogger("jobstore.executor")

_Op = TypeVar("_Op", bound=Operation)
_Handler = Callable[[AsyncConnection, Operation, "QueueProviderRegistry"], Awaitable[None]]

_HANDLERS: dict[type, _Handler] = {}

_AGGREGATE_TABLES = {
    AggregateKind.SET: SetEntry,
    AggregateKind.LIST: ListEntry,
    AggregateKind.HASH: HashEntry,
}


def _handles(op_type: type[_Op]):
    def register(fn):
        _HANDLERS[op_type] = fn
        return fn

    return register


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def execute_operation(
    conn: AsyncConnection,
    operation: Operation,
    queue_providers: "QueueProviderRegistry",
) -> None:
    """Apply one descriptor on *conn*."""
    handler = _HANDLERS.get(type(operation))
    if handler is None:
        raise TypeError(f"No executor registered for {type(operation).__name__}")
    logger.debug("Executing %s", operation.describe())
    await handler(conn, operation, queue_providers)


# ── Jobs ────────────────────────────────────────────────────────


@_handles(ExpireJob)
async def _expire_job(conn, op: ExpireJob, _providers) -> None:
    await conn.execute(
        update(Job).where(Job.id == op.job_id).values(expireat=_utcnow() + op.expire_in)
    )


@_handles(PersistJob)
async def _persist_job(conn, op: PersistJob, _providers) -> None:
    await conn.execute(update(Job).where(Job.id == op.job_id).values(expireat=None))


async def _insert_state(conn: AsyncConnection, job_id: int, state: StateData) -> int:
    result = await conn.execute(
        insert(JobState).values(
            jobid=job_id,
            name=state.name,
            reason=state.reason,
            createdat=_utcnow(),
            data=json.dumps(state.data),
        )
    )
    return result.inserted_primary_key[0]


@_handles(SetJobState)
async def _set_job_state(conn, op: SetJobState, _providers) -> None:
    state_id = await _insert_state(conn, op.job_id, op.state)
    await conn.execute(
        update(Job).where(Job.id == op.job_id).values(stateid=state_id, statename=op.state.name)
    )


@_handles(AddJobState)
async def _add_job_state(conn, op: AddJobState, _providers) -> None:
    await _insert_state(conn, op.job_id, op.state)


@_handles(AddToQueue)
async def _add_to_queue(conn, op: AddToQueue, providers: "QueueProviderRegistry") -> None:
    job_queue = providers.get_provider(op.queue).get_job_queue()
    await job_queue.enqueue(conn, op.queue, op.job_id)


# ── Counters ────────────────────────────────────────────────────


@_handles(AddCounterDelta)
async def _add_counter_delta(conn, op: AddCounterDelta, _providers) -> None:
    expireat = _utcnow() + op.expire_in if op.expire_in is not None else None
    await conn.execute(
        insert(CounterEntry).values(key=op.key, value=op.delta, expireat=expireat)
    )


# ── Sets ────────────────────────────────────────────────────────


@_handles(AddToSet)
async def _add_to_set(conn, op: AddToSet, _providers) -> None:
    result = await conn.execute(
        update(SetEntry)
        .where(SetEntry.key == op.key, SetEntry.value == op.value)
        .values(score=op.score)
    )
    if result.rowcount == 0:
        await conn.execute(insert(SetEntry).values(key=op.key, value=op.value, score=op.score))


@_handles(RemoveFromSet)
async def _remove_from_set(conn, op: RemoveFromSet, _providers) -> None:
    await conn.execute(delete(SetEntry).where(SetEntry.key == op.key, SetEntry.value == op.value))


@_handles(RemoveSet)
async def _remove_set(conn, op: RemoveSet, _providers) -> None:
    await conn.execute(delete(SetEntry).where(SetEntry.key == op.key))


# ── Lists ───────────────────────────────────────────────────────


@_handles(InsertToList)
async def _insert_to_list(conn, op: InsertToList, _providers) -> None:
    await conn.execute(insert(ListEntry).values(key=op.key, value=op.value))


@_handles(RemoveFromList)
async def _remove_from_list(conn, op: RemoveFromList, _providers) -> None:
    await conn.execute(delete(ListEntry).where(ListEntry.key == op.key, ListEntry.value == op.value))


@_handles(TrimList)
async def _trim_list(conn, op: TrimList, _providers) -> None:
    keep_count = op.keep_ending_at - op.keep_starting_from + 1
    stmt = delete(ListEntry).where(ListEntry.key == op.key)
    if keep_count > 0:
        keep = (
            select(ListEntry.id)
            .where(ListEntry.key == op.key)
            .order_by(ListEntry.id)
            .offset(op.keep_starting_from)
            .limit(keep_count)
        )
        stmt = stmt.where(ListEntry.id.not_in(keep))
    await conn.execute(stmt)


# ── Hashes ──────────────────────────────────────────────────────


@_handles(SetHashField)
async def _set_hash_field(conn, op: SetHashField, _providers) -> None:
    result = await conn.execute(
        update(HashEntry)
        .where(HashEntry.key == op.key, HashEntry.field == op.field)
        .values(value=op.value)
    )
    if result.rowcount == 0:
        await conn.execute(insert(HashEntry).values(key=op.key, field=op.field, value=op.value))


@_handles(RemoveHash)
async def _remove_hash(conn, op: RemoveHash, _providers) -> None:
    await conn.execute(delete(HashEntry).where(HashEntry.key == op.key))


# ── Expiry ──────────────────────────────────────────────────────


@_handles(ExpireKey)
async def _expire_key(conn, op: ExpireKey, _providers) -> None:
    table = _AGGREGATE_TABLES[op.kind]
    await conn.execute(
        update(table).where(table.key == op.key).values(expireat=_utcnow() + op.expire_in)
    )


@_handles(PersistKey)
async def _persist_key(conn, op: PersistKey, _providers) -> None:
    table = _AGGREGATE_TABLES[op.kind]
    await conn.execute(update(table).where(table.key == op.key).values(expireat=None))
