from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from cloudlock.core.cloud_lock import CloudLock
from cloudlock.core.errors import (
    ConfigurationError,
    InfrastructureError,
    LeaseConflictError,
    LeaseExpiredOnRenew,
    LeaseLostError,
    LockStateError,
)
from cloudlock.core.lease_memory import InMemoryLeaseStore, InMemoryLeaseTarget
from cloudlock.core.models import AccessCondition, LockState


class CountingTarget:
    """Wraps a target and records how often each lease call was made."""

    def __init__(self, inner: InMemoryLeaseTarget) -> None:
        self.inner = inner
        self.acquire_calls = 0
        self.release_calls = 0

    @property
    def name(self) -> str:
        return self.inner.name

    async def acquire_lease(self, duration: int, proposed_lease_id: Optional[str] = None) -> str:
        self.acquire_calls += 1
        return await self.inner.acquire_lease(duration, proposed_lease_id)

    async def renew_lease(self, lease_id: str) -> None:
        await self.inner.renew_lease(lease_id)

    async def release_lease(self, lease_id: str) -> None:
        self.release_calls += 1
        await self.inner.release_lease(lease_id)

    async def read(self, condition: Optional[AccessCondition] = None) -> bytes:
        return await self.inner.read(condition)

    async def write(self, data: bytes, condition: Optional[AccessCondition] = None) -> None:
        await self.inner.write(data, condition)


class StalledAcquireTarget(CountingTarget):
    """Grants the lease, then hangs before answering the caller."""

    def __init__(self, inner: InMemoryLeaseTarget) -> None:
        super().__init__(inner)
        self.granted = asyncio.Event()

    async def acquire_lease(self, duration: int, proposed_lease_id: Optional[str] = None) -> str:
        lease_id = await super().acquire_lease(duration, proposed_lease_id)
        self.granted.set()
        await asyncio.sleep(3600)
        return lease_id


class BrokenTarget(CountingTarget):
    async def acquire_lease(self, duration: int, proposed_lease_id: Optional[str] = None) -> str:
        self.acquire_calls += 1
        raise InfrastructureError(self.name, "connection refused")

    async def release_lease(self, lease_id: str) -> None:
        self.release_calls += 1
        raise InfrastructureError(self.name, "connection refused")


async def _external_acquire(target: InMemoryLeaseTarget) -> str:
    return await target.acquire_lease(CloudLock.MINIMUM_LEASE_DURATION)


# -------- construction --------

@pytest.mark.parametrize("duration", [0, 1, 14])
def test_duration_below_minimum_is_rejected(store: InMemoryLeaseStore, duration: int) -> None:
    target = CountingTarget(store.target("blob"))
    with pytest.raises(ConfigurationError):
        CloudLock(target, duration)
    assert target.acquire_calls == 0


def test_duration_above_maximum_is_rejected(store: InMemoryLeaseStore) -> None:
    with pytest.raises(ConfigurationError):
        CloudLock(store.target("blob"), 61)


def test_new_handle_is_unacquired(store: InMemoryLeaseStore) -> None:
    lock = CloudLock(store.target("blob"))
    assert lock.state is LockState.UNACQUIRED
    assert lock.lease_id is None
    assert lock.lease_duration == 15


# -------- acquisition --------

@pytest.mark.asyncio
async def test_try_acquire_stores_lease_and_sets_deadline(store, clock):
    await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)

    assert await lock.try_acquire() is True
    assert lock.state is LockState.HELD
    assert lock.lease_id is not None
    assert lock.deadline == clock.now + 15
    assert lock.remaining() == 15


@pytest.mark.asyncio
async def test_try_acquire_reports_contention_as_false(store, clock):
    target = await store.create("blob", b"0")
    await _external_acquire(target)
    lock = CloudLock(store.target("blob"), clock=clock)

    assert await lock.try_acquire() is False
    assert lock.state is LockState.UNACQUIRED
    assert lock.lease_id is None


@pytest.mark.asyncio
async def test_try_acquire_on_missing_object_propagates(store, clock):
    lock = CloudLock(store.target("missing"), clock=clock)
    with pytest.raises(InfrastructureError):
        await lock.try_acquire()
    assert lock.state is LockState.UNACQUIRED


@pytest.mark.asyncio
async def test_handle_is_not_reentrant_or_reusable(store, clock):
    await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)
    assert await lock.try_acquire()
    with pytest.raises(LockStateError):
        await lock.try_acquire()

    await lock.release()
    with pytest.raises(LockStateError):
        await lock.acquire(max_attempts=1, retry_interval=0)


@pytest.mark.asyncio
async def test_acquire_gives_up_after_max_attempts(store, clock):
    inner = await store.create("blob", b"0")
    await _external_acquire(inner)
    target = CountingTarget(store.target("blob"))
    lock = CloudLock(target, clock=clock)

    assert await lock.acquire(max_attempts=3, retry_interval=0.001) is False
    assert target.acquire_calls == 3
    assert lock.state is LockState.UNACQUIRED


@pytest.mark.asyncio
async def test_acquire_succeeds_once_holder_releases(store):
    target = await store.create("blob", b"0")
    holder = CloudLock(target)
    assert await holder.try_acquire()

    waiter = CloudLock(store.target("blob"))
    pending = asyncio.create_task(waiter.acquire(max_attempts=200, retry_interval=0.005))
    await asyncio.sleep(0.02)
    assert not pending.done()

    await holder.release()
    assert await asyncio.wait_for(pending, timeout=2) is True
    assert waiter.state is LockState.HELD
    await waiter.release()


@pytest.mark.asyncio
async def test_acquire_honours_wall_clock_timeout():
    store = InMemoryLeaseStore()
    target = await store.create("blob", b"0")
    await _external_acquire(target)
    counting = CountingTarget(store.target("blob"))
    lock = CloudLock(counting)

    assert await lock.acquire(max_attempts=None, retry_interval=0.01, timeout=0.05) is False
    assert 1 <= counting.acquire_calls <= 7


@pytest.mark.asyncio
async def test_acquire_rejects_invalid_budget(store):
    lock = CloudLock(store.target("blob"))
    with pytest.raises(ConfigurationError):
        await lock.acquire(max_attempts=0)
    with pytest.raises(ConfigurationError):
        await lock.acquire(max_attempts=None, timeout=None)
    with pytest.raises(ConfigurationError):
        await lock.acquire(max_attempts=1, retry_interval=-1)


@pytest.mark.asyncio
async def test_acquire_aborts_on_infrastructure_error(store):
    target = BrokenTarget(store.target("blob"))
    lock = CloudLock(target)
    with pytest.raises(InfrastructureError):
        await lock.acquire(max_attempts=5, retry_interval=0.001)
    assert target.acquire_calls == 1


@pytest.mark.asyncio
async def test_cancelled_acquire_does_not_leave_lease_held(store):
    inner = await store.create("blob", b"0")
    target = StalledAcquireTarget(store.target("blob"))
    lock = CloudLock(target)

    pending = asyncio.create_task(lock.acquire(max_attempts=1, retry_interval=0))
    await asyncio.wait_for(target.granted.wait(), timeout=1)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    assert lock.state is LockState.UNACQUIRED
    assert target.release_calls == 1
    assert await _external_acquire(inner)


@pytest.mark.asyncio
async def test_cancel_between_attempts_leaves_handle_unacquired(store):
    inner = await store.create("blob", b"0")
    await _external_acquire(inner)
    lock = CloudLock(store.target("blob"))

    pending = asyncio.create_task(lock.acquire(max_attempts=100, retry_interval=0.01))
    await asyncio.sleep(0.03)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending
    assert lock.state is LockState.UNACQUIRED
    assert lock.lease_id is None


# -------- renewal --------

@pytest.mark.asyncio
async def test_renew_before_expiry_resets_deadline(store, clock):
    inner = await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)
    assert await lock.try_acquire()
    lease_id = lock.lease_id

    clock.advance(10)
    await lock.renew()
    assert lock.lease_id == lease_id
    assert lock.deadline == clock.now + 15

    # The original 15s would be over by now; the renewed lease still blocks others.
    clock.advance(10)
    with pytest.raises(LeaseConflictError):
        await _external_acquire(inner)
    await lock.release()


@pytest.mark.asyncio
async def test_expired_lease_can_be_taken_and_renew_fails(store, clock):
    inner = await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)
    assert await lock.try_acquire()

    clock.advance(14)
    with pytest.raises(LeaseConflictError):
        await _external_acquire(inner)

    clock.advance(2)
    other = await _external_acquire(inner)
    assert other != lock.lease_id

    with pytest.raises(LeaseExpiredOnRenew):
        await lock.renew()
    assert lock.state is LockState.RELEASED
    assert lock.lease_id is None
    assert lock.ownership_lost.is_set()


@pytest.mark.asyncio
async def test_service_rejection_on_renew_is_lost_ownership(store, clock):
    await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)
    assert await lock.try_acquire()
    # Another party broke the lease behind our back.
    store._objects["blob"].lease_id = "someone-else"

    with pytest.raises(LeaseExpiredOnRenew) as info:
        await lock.renew()
    assert isinstance(info.value.__cause__, LeaseLostError)
    assert lock.state is LockState.RELEASED


@pytest.mark.asyncio
async def test_renew_requires_held_lock(store):
    lock = CloudLock(store.target("blob"))
    with pytest.raises(LockStateError):
        await lock.renew()


@pytest.mark.asyncio
async def test_auto_renew_keeps_lease_alive():
    store = InMemoryLeaseStore()
    await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"))
    assert await lock.try_acquire()
    renewals = []
    original = lock.renew

    async def tracking_renew() -> None:
        renewals.append(lock.lease_id)
        await original()

    lock.renew = tracking_renew  # type: ignore[method-assign]
    task = lock.start_auto_renew(interval=0.01)
    await asyncio.sleep(0.05)
    assert len(renewals) >= 2
    assert lock.state is LockState.HELD

    await lock.release()
    assert task.done()
    assert lock.state is LockState.RELEASED


@pytest.mark.asyncio
async def test_auto_renew_signals_lost_ownership(store, clock):
    await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)
    assert await lock.try_acquire()
    task = lock.start_auto_renew(interval=0.01)

    clock.advance(16)
    await asyncio.wait_for(lock.ownership_lost.wait(), timeout=1)
    await asyncio.wait_for(task, timeout=1)
    assert lock.state is LockState.RELEASED


def test_auto_renew_interval_must_fit_in_lease(store):
    lock = CloudLock(store.target("blob"))
    lock._state = LockState.HELD
    with pytest.raises(ConfigurationError):
        lock.start_auto_renew(interval=15)


# -------- release & disposal --------

@pytest.mark.asyncio
async def test_release_frees_target_immediately(store, clock):
    inner = await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)
    assert await lock.try_acquire()

    await lock.release()
    assert lock.state is LockState.RELEASED
    assert lock.lease_id is None
    assert await _external_acquire(inner)


@pytest.mark.asyncio
async def test_release_is_idempotent(store):
    await store.create("blob", b"0")
    never = CloudLock(store.target("blob"))
    await never.release()
    await never.release()
    assert never.state is LockState.RELEASED

    target = CountingTarget(store.target("blob"))
    held = CloudLock(target)
    assert await held.try_acquire()
    await held.release()
    await held.release()
    assert held.state is LockState.RELEASED
    assert target.release_calls == 1


@pytest.mark.asyncio
async def test_release_after_lapse_does_not_raise(store, clock):
    inner = await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)
    assert await lock.try_acquire()
    clock.advance(16)
    await _external_acquire(inner)

    await lock.release()
    assert lock.state is LockState.RELEASED


@pytest.mark.asyncio
async def test_scope_exit_releases_lock(store, clock):
    inner = await store.create("blob", b"0")
    async with CloudLock(store.target("blob"), clock=clock) as lock:
        assert await lock.acquire(5, 0.001)

    assert lock.state is LockState.RELEASED
    lease_id = await _external_acquire(inner)
    assert lease_id
    await inner.release_lease(lease_id)


@pytest.mark.asyncio
async def test_scope_exit_releases_on_error(store, clock):
    inner = await store.create("blob", b"0")
    with pytest.raises(ValueError, match="boom"):
        async with CloudLock(store.target("blob"), clock=clock) as lock:
            assert await lock.try_acquire()
            raise ValueError("boom")

    assert lock.state is LockState.RELEASED
    assert await _external_acquire(inner)


@pytest.mark.asyncio
async def test_scope_exit_swallows_release_failure(store, clock):
    await store.create("blob", b"0")
    target = BrokenTarget(store.target("blob"))
    lock = CloudLock(target, clock=clock)
    # Pretend an acquisition already happened.
    lock._state = LockState.HELD
    lock._lease_id = "lease-1"

    with pytest.raises(KeyError):
        async with lock:
            raise KeyError("original failure")

    assert target.release_calls == 1
    assert lock.state is LockState.RELEASED
    assert lock.lease_id is None


@pytest.mark.asyncio
async def test_sequential_cycles_each_release_before_next(store):
    inner = await store.create("blob", b"0")
    for _ in range(3):
        async with CloudLock(store.target("blob")) as lock:
            assert await lock.acquire(1, 0)
        lease_id = await _external_acquire(inner)
        await inner.release_lease(lease_id)


# -------- guarded access --------

@pytest.mark.asyncio
async def test_guarded_read_write_present_lease(store, clock):
    inner = await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)
    assert await lock.try_acquire()

    await lock.write(b"41")
    assert await lock.read() == b"41"
    with pytest.raises(LeaseLostError):
        await inner.write(b"hijack")
    await lock.release()
    with pytest.raises(LockStateError):
        await lock.read()


@pytest.mark.asyncio
async def test_stale_holder_cannot_write_after_reacquisition(store, clock):
    inner = await store.create("blob", b"0")
    lock = CloudLock(store.target("blob"), clock=clock)
    assert await lock.try_acquire()
    stale = lock.access_condition

    clock.advance(16)
    await _external_acquire(inner)
    with pytest.raises(LeaseLostError):
        await inner.write(b"stale", stale)
    assert await inner.read() == b"0"


# -------- contention workload --------

async def _increment_by_one(store: InMemoryLeaseStore) -> None:
    async with CloudLock(store.target("counter")) as lock:
        assert await lock.acquire(50, 0.01)
        current = int((await lock.read()).decode("utf-8")) + 1
        await lock.write(str(current).encode("utf-8"))
        await lock.release()


@pytest.mark.asyncio
async def test_concurrent_increments_apply_exactly_once():
    store = InMemoryLeaseStore(latency=0.002)
    counter = await store.create("counter", b"0")

    await asyncio.gather(*(_increment_by_one(store) for _ in range(3)))

    assert await counter.read() == b"3"


@pytest.mark.asyncio
async def test_many_concurrent_increments_apply_exactly_once():
    store = InMemoryLeaseStore(latency=0.001)
    counter = await store.create("counter", b"0")

    await asyncio.gather(*(_increment_by_one(store) for _ in range(8)))

    assert int(await counter.read()) == 8


@pytest.mark.asyncio
async def test_duration_tampered_after_construction_never_reaches_service(store):
    await store.create("blob", b"0")
    target = CountingTarget(store.target("blob"))
    lock = CloudLock(target)
    lock.lease_duration = 5

    with pytest.raises(ConfigurationError):
        await lock.acquire(max_attempts=3, retry_interval=0)
    assert target.acquire_calls == 0
