"""In-process lease service used for tests and single-host runs."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import InfrastructureError, LeaseConflictError, LeaseLostError
from .lease import LeaseStore
from .models import MAXIMUM_LEASE_DURATION, MINIMUM_LEASE_DURATION, AccessCondition


@dataclass(slots=True)
class _StoredObject:
    data: bytes
    lease_id: Optional[str] = None
    lease_expires_at: float = 0.0
    lease_duration: int = 0


class InMemoryLeaseStore(LeaseStore):
    """Objects and their leases kept in a dict, expiring against ``clock``.

    ``latency`` delays every operation by that many seconds before it takes
    effect, which widens race windows in concurrency tests.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic, latency: float = 0.0) -> None:
        self._clock = clock
        self._latency = latency
        self._objects: Dict[str, _StoredObject] = {}
        self._lock = asyncio.Lock()

    def target(self, name: str) -> "InMemoryLeaseTarget":
        return InMemoryLeaseTarget(self, name)

    async def create(self, name: str, data: bytes = b"") -> "InMemoryLeaseTarget":
        target = self.target(name)
        async with self._lock:
            existing = self._objects.get(name)
            if existing is not None and self._is_live(existing):
                raise LeaseLostError(name, None, f"{name}: cannot overwrite a leased object")
            self._objects[name] = _StoredObject(data=bytes(data))
        return target

    async def delete(self, name: str) -> None:
        async with self._lock:
            self._objects.pop(name, None)

    def exists(self, name: str) -> bool:
        return name in self._objects

    # ---------- operations used by targets ----------

    async def _pause(self) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)

    def _get(self, name: str) -> _StoredObject:
        obj = self._objects.get(name)
        if obj is None:
            raise InfrastructureError(name, "object not found")
        return obj

    def _is_live(self, obj: _StoredObject) -> bool:
        return obj.lease_id is not None and self._clock() < obj.lease_expires_at

    async def acquire(self, name: str, duration: int, proposed_lease_id: Optional[str]) -> str:
        await self._pause()
        async with self._lock:
            obj = self._get(name)
            if not MINIMUM_LEASE_DURATION <= duration <= MAXIMUM_LEASE_DURATION:
                raise InfrastructureError(name, f"invalid lease duration {duration}")
            if self._is_live(obj) and obj.lease_id != proposed_lease_id:
                raise LeaseConflictError(name)
            obj.lease_id = proposed_lease_id or str(uuid.uuid4())
            obj.lease_duration = duration
            obj.lease_expires_at = self._clock() + duration
            return obj.lease_id

    async def renew(self, name: str, lease_id: str) -> None:
        await self._pause()
        async with self._lock:
            obj = self._get(name)
            if not self._is_live(obj) or obj.lease_id != lease_id:
                raise LeaseLostError(name, lease_id)
            obj.lease_expires_at = self._clock() + obj.lease_duration

    async def release(self, name: str, lease_id: str) -> None:
        await self._pause()
        async with self._lock:
            obj = self._get(name)
            if obj.lease_id != lease_id:
                raise LeaseLostError(name, lease_id)
            obj.lease_id = None
            obj.lease_expires_at = 0.0

    async def read(self, name: str, condition: Optional[AccessCondition]) -> bytes:
        await self._pause()
        async with self._lock:
            obj = self._get(name)
            if condition is not None and condition.lease_id is not None:
                if not self._is_live(obj) or obj.lease_id != condition.lease_id:
                    raise LeaseLostError(name, condition.lease_id)
            return obj.data

    async def write(self, name: str, data: bytes, condition: Optional[AccessCondition]) -> None:
        await self._pause()
        async with self._lock:
            obj = self._get(name)
            presented = condition.lease_id if condition is not None else None
            if self._is_live(obj):
                if presented != obj.lease_id:
                    raise LeaseLostError(name, presented)
            elif presented is not None:
                raise LeaseLostError(name, presented)
            obj.data = bytes(data)


class InMemoryLeaseTarget:
    """Reference to one object of an :class:`InMemoryLeaseStore`."""

    def __init__(self, store: InMemoryLeaseStore, name: str) -> None:
        self._store = store
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    async def acquire_lease(self, duration: int, proposed_lease_id: Optional[str] = None) -> str:
        return await self._store.acquire(self._name, duration, proposed_lease_id)

    async def renew_lease(self, lease_id: str) -> None:
        await self._store.renew(self._name, lease_id)

    async def release_lease(self, lease_id: str) -> None:
        await self._store.release(self._name, lease_id)

    async def read(self, condition: Optional[AccessCondition] = None) -> bytes:
        return await self._store.read(self._name, condition)

    async def write(self, data: bytes, condition: Optional[AccessCondition] = None) -> None:
        await self._store.write(self._name, data, condition)

    def __repr__(self) -> str:
        return f"InMemoryLeaseTarget({self._name!r})"
