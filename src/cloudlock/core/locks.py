"""Scoped lock acquisition on top of a lease store."""

from __future__ import annotations

from typing import Optional, Protocol

from .cloud_lock import CloudLock
from .lease import LeaseStore
from .models import MINIMUM_LEASE_DURATION
from cloudlock.services.audit_logger import AuditLogger


class AsyncLock(Protocol):
    async def __aenter__(self) -> bool: ...
    async def __aexit__(self, exc_type, exc, tb) -> None: ...


class _ScopedLock:
    """Acquire on enter (reporting success as a bool), dispose on exit."""

    def __init__(self, handle: CloudLock, max_attempts: int, retry_interval: float) -> None:
        self.handle = handle
        self._max_attempts = max_attempts
        self._retry_interval = retry_interval

    async def __aenter__(self) -> bool:
        try:
            return await self.handle.acquire(self._max_attempts, self._retry_interval)
        except BaseException:
            await self.handle.aclose()
            raise

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.handle.aclose()


class LockManager:
    """Hands out lock handles for named objects of one lease store."""

    def __init__(
        self,
        store: LeaseStore,
        *,
        lease_duration: int = MINIMUM_LEASE_DURATION,
        max_attempts: int = 10,
        retry_interval: float = 1.0,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.store = store
        self.lease_duration = lease_duration
        self.max_attempts = max_attempts
        self.retry_interval = retry_interval
        self._audit = audit_logger

    def handle(self, key: str, lease_duration: Optional[int] = None) -> CloudLock:
        """Return an unacquired handle for ``key``."""
        return CloudLock(
            self.store.target(key),
            self.lease_duration if lease_duration is None else lease_duration,
            audit_logger=self._audit,
        )

    def lock(self, key: str, lease_duration: Optional[int] = None) -> AsyncLock:
        """Return an async context manager that attempts to acquire a lock.

        ``async with manager.lock("counter") as acquired:`` yields False when
        the retry budget ran out; the scope's ``handle`` gives guarded access.
        """
        return _ScopedLock(self.handle(key, lease_duration), self.max_attempts, self.retry_interval)

    async def close(self) -> None:
        await self.store.close()
