"""Distributed lock tests.

Covers:
1. Acquire / release under both acquisition policies
2. Timeout bound and the flat 1 s retry ceiling
3. Release guard: idempotent second call, lost rows, never-acquired handles
4. Faults raised during an attempt count as failed attempts
5. Mutual exclusion between concurrent workers
6. Two-worker scenario on "queue:default"
"""

from __future__ import annotations

import asyncio
import time
import types
from datetime import timedelta

import pytest
from sqlalchemy import delete, select

from jobstore.db.models import LockRecord
from jobstore.storage.errors import LockReleaseError, LockTimeoutError
from jobstore.storage.lock import (
    DistributedLock,
    LockState,
    TransactionalAcquirePolicy,
    UpdateCountAcquirePolicy,
    acquire_lock,
    policy_for,
)

POLICIES = [TransactionalAcquirePolicy, UpdateCountAcquirePolicy]


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


class _FakeClock:
    """Stands in for ``time`` and ``asyncio`` inside the lock module."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


class _NeverPolicy:
    name = "never"

    def __init__(self) -> None:
        self.attempts = 0

    async def try_acquire(self, gateway, resource) -> bool:
        self.attempts += 1
        return False


class _FlakyPolicy:
    """Raises on the first attempts, then delegates to a real policy."""

    name = "flaky"

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.attempts = 0
        self._inner = TransactionalAcquirePolicy()

    async def try_acquire(self, gateway, resource) -> bool:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("server closed the connection unexpectedly")
        return await self._inner.try_acquire(gateway, resource)


@pytest.fixture
def fake_clock(monkeypatch):
    clock = _FakeClock()
    monkeypatch.setattr("jobstore.storage.lock.time", types.SimpleNamespace(monotonic=clock.monotonic))
    monkeypatch.setattr("jobstore.storage.lock.asyncio", types.SimpleNamespace(sleep=clock.sleep))
    return clock


# ─────────────────────────────────────────────────────────────────────────────
# 1. Acquire / release
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("policy_cls", POLICIES)
async def test_acquire_places_one_row_and_release_removes_it(gateway, count_rows, policy_cls):
    lock = await acquire_lock(gateway, "recurring-jobs:lock", 1, policy_cls())

    assert lock.state is LockState.ACQUIRED
    assert lock.is_held
    assert await count_rows(LockRecord, resource="recurring-jobs:lock") == 1

    await lock.release()

    assert lock.state is LockState.RELEASED
    assert await count_rows(LockRecord, resource="recurring-jobs:lock") == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("policy_cls", POLICIES)
async def test_second_acquire_on_held_resource_times_out(gateway, policy_cls):
    holder = await acquire_lock(gateway, "queue:critical", 1, policy_cls())

    with pytest.raises(LockTimeoutError) as excinfo:
        await acquire_lock(gateway, "queue:critical", 0.2, policy_cls())

    assert excinfo.value.resource == "queue:critical"
    assert "queue:critical" in str(excinfo.value)
    await holder.release()


@pytest.mark.asyncio
@pytest.mark.parametrize("policy_cls", POLICIES)
async def test_different_resources_do_not_block_each_other(gateway, policy_cls):
    first = await acquire_lock(gateway, "queue:default", 0.2, policy_cls())
    second = await acquire_lock(gateway, "queue:emails", 0.2, policy_cls())

    assert first.is_held and second.is_held
    await second.release()
    await first.release()


@pytest.mark.asyncio
async def test_update_count_policy_flips_counter_to_one(gateway, fetch_all):
    lock = await acquire_lock(gateway, "stats:aggregate", 1, UpdateCountAcquirePolicy())

    rows = await fetch_all(select(LockRecord.updatecount).where(LockRecord.resource == "stats:aggregate"))
    assert [r[0] for r in rows] == [1]
    await lock.release()


@pytest.mark.asyncio
async def test_update_count_policy_claims_a_pre_placed_row(gateway):
    """A zero-valued row left by a racing insert is still claimable."""
    await gateway.execute(LockRecord.__table__.insert().values(resource="queue:default", updatecount=0))

    lock = await acquire_lock(gateway, "queue:default", 0.2, UpdateCountAcquirePolicy())

    assert lock.is_held
    await lock.release()


@pytest.mark.asyncio
async def test_context_manager_releases_on_exit(gateway, count_rows):
    async with DistributedLock(gateway, "maintenance", timedelta(seconds=1)) as lock:
        assert lock.is_held
        assert await count_rows(LockRecord, resource="maintenance") == 1

    assert lock.state is LockState.RELEASED
    assert await count_rows(LockRecord, resource="maintenance") == 0


@pytest.mark.asyncio
async def test_context_manager_releases_when_body_raises(gateway, count_rows):
    with pytest.raises(KeyError):
        async with DistributedLock(gateway, "maintenance", 1):
            raise KeyError("boom")

    assert await count_rows(LockRecord, resource="maintenance") == 0


def test_policy_for_selects_strategy():
    assert isinstance(policy_for(True), TransactionalAcquirePolicy)
    assert isinstance(policy_for(False), UpdateCountAcquirePolicy)


def test_rejects_empty_resource():
    with pytest.raises(ValueError):
        DistributedLock(types.SimpleNamespace(), "", 1)


def test_rejects_negative_timeout():
    with pytest.raises(ValueError):
        DistributedLock(types.SimpleNamespace(), "queue:default", -1)


# ─────────────────────────────────────────────────────────────────────────────
# 2. Timeout bound and retry cadence
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_retry_sleep_is_capped_at_one_second(gateway, fake_clock):
    policy = _NeverPolicy()
    lock = DistributedLock(gateway, "queue:default", 2.5, policy)

    with pytest.raises(LockTimeoutError):
        await lock.acquire()

    # 1 s, 1 s, then only what is left of the timeout; no backoff.
    assert fake_clock.sleeps == [1.0, 1.0, 0.5]
    assert policy.attempts == 4
    assert lock.state is LockState.TIMED_OUT


@pytest.mark.asyncio
async def test_zero_timeout_makes_exactly_one_attempt(gateway, fake_clock):
    policy = _NeverPolicy()

    with pytest.raises(LockTimeoutError):
        await DistributedLock(gateway, "queue:default", 0, policy).acquire()

    assert policy.attempts == 1
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_timeout_raised_within_one_retry_of_deadline(gateway):
    holder = await acquire_lock(gateway, "queue:default", 1)

    started = time.monotonic()
    with pytest.raises(LockTimeoutError):
        await acquire_lock(gateway, "queue:default", 1.5)
    elapsed = time.monotonic() - started

    assert 1.5 <= elapsed < 2.5
    await holder.release()


@pytest.mark.asyncio
async def test_timed_out_handle_cannot_be_reused(gateway, fake_clock):
    lock = DistributedLock(gateway, "queue:default", 0, _NeverPolicy())
    with pytest.raises(LockTimeoutError):
        await lock.acquire()

    with pytest.raises(RuntimeError):
        await lock.acquire()


# ─────────────────────────────────────────────────────────────────────────────
# 3. Release guard
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_second_release_is_a_silent_noop(gateway, count_rows):
    lock = await acquire_lock(gateway, "queue:default", 1)
    await lock.release()

    # Another worker now holds the same resource; the stale handle must not touch it.
    other = await acquire_lock(gateway, "queue:default", 1)
    await lock.release()

    assert await count_rows(LockRecord, resource="queue:default") == 1
    assert other.is_held
    await other.release()


@pytest.mark.asyncio
async def test_release_raises_when_row_vanished(gateway):
    lock = await acquire_lock(gateway, "queue:default", 1)
    await gateway.execute(delete(LockRecord).where(LockRecord.resource == "queue:default"))

    with pytest.raises(LockReleaseError) as excinfo:
        await lock.release()

    assert excinfo.value.resource == "queue:default"
    assert lock.state is LockState.RELEASE_FAILED

    # Completed: no second raise.
    await lock.release()


@pytest.mark.asyncio
async def test_release_without_acquire_never_deletes_foreign_row(gateway, count_rows):
    holder = await acquire_lock(gateway, "queue:default", 1)
    stranger = DistributedLock(gateway, "queue:default", 1)

    with pytest.raises(LockReleaseError):
        await stranger.release()
    await stranger.release()

    assert await count_rows(LockRecord, resource="queue:default") == 1
    await holder.release()


# ─────────────────────────────────────────────────────────────────────────────
# 4. Faults during an attempt
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_faulting_attempts_are_retried_not_raised(gateway, fake_clock):
    policy = _FlakyPolicy(failures=2)

    lock = await DistributedLock(gateway, "queue:default", 10, policy).acquire()

    assert lock.is_held
    assert policy.attempts == 3
    assert fake_clock.sleeps == [1.0, 1.0]
    await lock.release()


@pytest.mark.asyncio
async def test_faults_until_deadline_end_in_timeout(gateway, fake_clock):
    policy = _FlakyPolicy(failures=100)

    with pytest.raises(LockTimeoutError):
        await DistributedLock(gateway, "queue:default", 1.5, policy).acquire()

    assert policy.attempts == 3


# ─────────────────────────────────────────────────────────────────────────────
# 5. Mutual exclusion
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize("use_native", [True, False])
async def test_concurrent_workers_never_overlap(make_storage, use_native):
    workers = [await make_storage(USE_NATIVE_DATABASE_TRANSACTIONS=use_native) for _ in range(3)]
    active = 0
    peak = 0

    async def critical_section(st):
        nonlocal active, peak
        async with st.distributed_lock("queue:default", timeout=15):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1

    await asyncio.gather(*(critical_section(st) for st in workers))

    assert peak == 1


# ─────────────────────────────────────────────────────────────────────────────
# 6. Scenario
# ─────────────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_two_worker_scenario(make_storage):
    worker_a = await make_storage()
    worker_b = await make_storage()

    lock_a = await worker_a.acquire_lock("queue:default", timeout=5)

    started = time.monotonic()
    with pytest.raises(LockTimeoutError) as excinfo:
        await worker_b.acquire_lock("queue:default", timeout=2)
    elapsed = time.monotonic() - started

    assert excinfo.value.resource == "queue:default"
    assert 2.0 <= elapsed < 3.0

    await lock_a.release()

    lock_b = await worker_b.acquire_lock("queue:default", timeout=5)
    assert lock_b.is_held
    await lock_b.release()
