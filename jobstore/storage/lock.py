"""Row-based distributed lock shared by every worker process.

A lock on *resource* is held while a row keyed by that resource exists in
the ``lock`` table.  Nothing outside the store is involved.

Acquisition policies
--------------------
The way a single attempt claims the row is pluggable and chosen once, from
``USE_NATIVE_DATABASE_TRANSACTIONS``:

``TransactionalAcquirePolicy``
    ``INSERT … SELECT … WHERE NOT EXISTS`` inside one REPEATABLE READ
    transaction.  One affected row means we own the lock.  Concurrent
    inserts that slip past the existence check hit the primary key and fail.

``UpdateCountAcquirePolicy``
    Insert a row with ``updatecount = 0`` if none exists (duplicate-key
    races are expected and ignored), then flip ``updatecount`` 0 → 1 for the
    resource.  Only the worker whose UPDATE touched the row owns the lock.

Retry loop
----------
Both policies share the same loop: any exception raised by an attempt counts
as a failed attempt.  Between attempts the task sleeps for
``min(1s, remaining timeout)``; once the elapsed time exceeds the timeout (or
nothing is left to sleep) ``LockTimeoutError`` is raised.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, delete, exists, insert, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import Insert

from jobstore.db.models import LockRecord
from jobstore.storage.errors import LockReleaseError, LockTimeoutError
from jobstore.storage.gateway import StoreGateway
from jobstore.utils.logger import ctx_resource

logger = logging.getLogger("jobstore.lock")

_MAX_RETRY_DELAY = 1.0  # seconds; flat ceiling, no backoff


class LockState(str, enum.Enum):
    UNACQUIRED = "unacquired"
    ATTEMPTING = "attempting"
    ACQUIRED = "acquired"
    TIMED_OUT = "timed_out"
    RELEASED = "released"
    RELEASE_FAILED = "release_failed"


def _insert_if_absent(resource: str, updatecount: int) -> Insert:
    """INSERT a lock row for *resource* unless one already exists."""
    row = select(
        literal(resource, String),
        literal(updatecount, Integer),
        literal(datetime.now(timezone.utc), DateTime(timezone=True)),
    ).where(~exists().where(LockRecord.resource == resource))
    return insert(LockRecord).from_select(["resource", "updatecount", "acquired_at"], row)


class AcquirePolicy(Protocol):
    name: str

    async def try_acquire(self, gateway: StoreGateway, resource: str) -> bool:
        """Make one attempt; True when the caller now owns *resource*."""
        ...


class TransactionalAcquirePolicy:
    name = "transactional"

    async def try_acquire(self, gateway: StoreGateway, resource: str) -> bool:
        async with gateway.begin(gateway.repeatable_read) as conn:
            result = await conn.execute(_insert_if_absent(resource, updatecount=1))
        return result.rowcount > 0


class UpdateCountAcquirePolicy:
    name = "update_count"

    async def try_acquire(self, gateway: StoreGateway, resource: str) -> bool:
        try:
            await gateway.execute(_insert_if_absent(resource, updatecount=0))
        except SQLAlchemyError as exc:
            # Another worker inserted the same row between our check and insert.
            logger.debug("Lock row insert for %r raced: %s", resource, exc)

        rows = await gateway.execute(
            update(LockRecord)
            .where(LockRecord.resource == resource, LockRecord.updatecount == 0)
            .values(updatecount=1, acquired_at=datetime.now(timezone.utc))
        )
        return rows > 0


def policy_for(use_native_transactions: bool) -> AcquirePolicy:
    """Return the acquisition policy matching the storage configuration."""
    if use_native_transactions:
        return TransactionalAcquirePolicy()
    return UpdateCountAcquirePolicy()


def _as_seconds(timeout: float | timedelta) -> float:
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return float(timeout)


class DistributedLock:
    """Exclusive claim on a named resource.

    Usage::

        async with DistributedLock(gateway, "queue:default", timeout=5):
            ...  # only one worker at a time gets here

    or, when the critical section spans several calls::

        lock = await acquire_lock(gateway, "queue:default", 5)
        try:
            ...
        finally:
            await lock.release()
    """

    def __init__(
        self,
        gateway: StoreGateway,
        resource: str,
        timeout: float | timedelta,
        policy: AcquirePolicy | None = None,
    ) -> None:
        if not resource:
            raise ValueError("resource must be a non-empty string")
        seconds = _as_seconds(timeout)
        if seconds < 0:
            raise ValueError(f"timeout must not be negative, got {seconds}")

        self._gateway = gateway
        self._resource = resource
        self._timeout = seconds
        self._policy: AcquirePolicy = policy or TransactionalAcquirePolicy()
        self._state = LockState.UNACQUIRED
        self._completed = False

    @property
    def resource(self) -> str:
        return self._resource

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def policy(self) -> AcquirePolicy:
        return self._policy

    @property
    def state(self) -> LockState:
        return self._state

    @property
    def is_held(self) -> bool:
        return self._state is LockState.ACQUIRED

    async def __aenter__(self) -> "DistributedLock":
        return await self.acquire()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()

    async def acquire(self) -> "DistributedLock":
        """Poll until the lock row is ours or the timeout elapses."""
        if self._state is not LockState.UNACQUIRED:
            raise RuntimeError(f"Lock on '{self._resource}' was already used ({self._state.value})")

        self._state = LockState.ATTEMPTING
        token = ctx_resource.set(self._resource)
        started = time.monotonic()
        attempts = 0
        try:
            while True:
                attempts += 1
                try:
                    if await self._policy.try_acquire(self._gateway, self._resource):
                        self._state = LockState.ACQUIRED
                        logger.debug(
                            "Lock acquired: resource=%s policy=%s attempts=%d",
                            self._resource, self._policy.name, attempts,
                        )
                        return self
                except Exception as exc:
                    logger.debug(
                        "Lock attempt %d on %s failed: %s", attempts, self._resource, exc,
                    )

                elapsed = time.monotonic() - started
                if elapsed > self._timeout:
                    break
                delay = min(_MAX_RETRY_DELAY, self._timeout - elapsed)
                if delay <= 0:
                    break
                await asyncio.sleep(delay)
        finally:
            ctx_resource.reset(token)

        self._state = LockState.TIMED_OUT
        logger.warning(
            "Lock timeout: resource=%s timeout=%.3fs attempts=%d",
            self._resource, self._timeout, attempts,
        )
        raise LockTimeoutError(self._resource, self._timeout)

    async def release(self) -> None:
        """Delete the lock row.  Only the first call has any effect."""
        if self._completed:
            return
        self._completed = True

        if self._state is not LockState.ACQUIRED:
            self._state = LockState.RELEASE_FAILED
            raise LockReleaseError(self._resource, "Lock was never acquired by this handle.")

        rows = await self._gateway.execute(
            delete(LockRecord).where(LockRecord.resource == self._resource)
        )
        if rows <= 0:
            self._state = LockState.RELEASE_FAILED
            logger.error("Lock row for %s vanished before release", self._resource)
            raise LockReleaseError(self._resource)

        self._state = LockState.RELEASED
        logger.debug("Lock released: resource=%s", self._resource)


async def acquire_lock(
    gateway: StoreGateway,
    resource: str,
    timeout: float | timedelta,
    policy: AcquirePolicy | None = None,
) -> DistributedLock:
    """Acquire and return a lock on *resource*; raises ``LockTimeoutError``."""
    return await DistributedLock(gateway, resource, timeout, policy).acquire()
