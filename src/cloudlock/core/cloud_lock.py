"""Mutual exclusion driven by leases on a remote storage object."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
import uuid
from typing import Any, Callable, Dict, Optional

from cloudlock.core.errors import (
    ConfigurationError,
    InfrastructureError,
    LeaseConflictError,
    LeaseExpiredOnRenew,
    LeaseLostError,
    LockStateError,
)
from cloudlock.core.lease import LeaseTarget
from cloudlock.core.models import (
    MAXIMUM_LEASE_DURATION,
    MINIMUM_LEASE_DURATION,
    AccessCondition,
    LockState,
)
from cloudlock.services.audit_logger import AuditLogger
from cloudlock.utils.logging import get_logger


Clock = Callable[[], float]


def validate_lease_duration(duration: int) -> int:
    """Return ``duration`` if the storage service would accept it."""
    if isinstance(duration, bool) or not isinstance(duration, int):
        raise ConfigurationError(f"Lease duration must be whole seconds, got {duration!r}")
    if duration < MINIMUM_LEASE_DURATION:
        raise ConfigurationError(
            f"Lease duration {duration}s is below the service minimum of {MINIMUM_LEASE_DURATION}s"
        )
    if duration > MAXIMUM_LEASE_DURATION:
        raise ConfigurationError(
            f"Lease duration {duration}s is above the service maximum of {MAXIMUM_LEASE_DURATION}s"
        )
    return duration


class CloudLock:
    """Client-side driver of the acquire/renew/release protocol for one object.

    The storage service alone decides who owns the target; the handle only
    tracks its own lease id and the deadline after which that lease must be
    assumed gone. Handles are single use: once released (explicitly, by scope
    exit, or by a failed renewal) a new handle is required.

    Usage::

        async with CloudLock(target) as lock:
            if await lock.acquire(max_attempts=10, retry_interval=1.0):
                value = await lock.read()
                await lock.write(value + b"!")
    """

    MINIMUM_LEASE_DURATION = MINIMUM_LEASE_DURATION
    MAXIMUM_LEASE_DURATION = MAXIMUM_LEASE_DURATION

    def __init__(
        self,
        target: LeaseTarget,
        lease_duration: int = MINIMUM_LEASE_DURATION,
        *,
        clock: Clock = time.monotonic,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self.target = target
        self.lease_duration = validate_lease_duration(lease_duration)
        self.logger = get_logger("CloudLock")
        self._clock = clock
        self._audit = audit_logger
        self._state = LockState.UNACQUIRED
        self._lease_id: Optional[str] = None
        self._deadline: Optional[float] = None
        self._renew_task: Optional[asyncio.Task[None]] = None
        self.ownership_lost = asyncio.Event()

    # ---------- state ----------

    @property
    def state(self) -> LockState:
        return self._state

    @property
    def lease_id(self) -> Optional[str]:
        return self._lease_id

    @property
    def is_held(self) -> bool:
        return self._state is LockState.HELD

    @property
    def deadline(self) -> Optional[float]:
        """Clock instant at which the current lease runs out, if held."""
        return self._deadline

    def remaining(self) -> float:
        """Seconds left on the current lease; 0 when not held or overdue."""
        if self._deadline is None:
            return 0.0
        return max(0.0, self._deadline - self._clock())

    @property
    def access_condition(self) -> AccessCondition:
        if self._lease_id is None:
            raise LockStateError(f"Lock on {self.target.name} is not held")
        return AccessCondition.for_lease(self._lease_id)

    # ---------- acquisition ----------

    async def try_acquire(self) -> bool:
        """Issue a single lease request; False means someone else holds it."""
        if self._state is LockState.HELD:
            raise LockStateError(f"Lock on {self.target.name} is already held by this handle")
        if self._state is LockState.RELEASED:
            raise LockStateError(f"Lock on {self.target.name} was released; create a new handle")
        validate_lease_duration(self.lease_duration)

        proposed = str(uuid.uuid4())
        started = self._clock()
        try:
            lease_id = await self.target.acquire_lease(self.lease_duration, proposed)
        except LeaseConflictError:
            self.logger.debug("Lease on %s is held elsewhere", self.target.name)
            return False
        except asyncio.CancelledError:
            # The request may have been granted before cancellation landed.
            await asyncio.shield(self._abandon(proposed))
            raise

        self._lease_id = lease_id
        self._deadline = started + self.lease_duration
        self._state = LockState.HELD
        self.logger.info("Acquired lease %s on %s for %ds", lease_id, self.target.name, self.lease_duration)
        try:
            await self._record("acquired", duration=self.lease_duration)
        except asyncio.CancelledError:
            await asyncio.shield(self.aclose())
            raise
        return True

    async def acquire(
        self,
        max_attempts: Optional[int] = 10,
        retry_interval: float = 1.0,
        *,
        timeout: Optional[float] = None,
    ) -> bool:
        """Poll ``try_acquire`` at a fixed interval until it succeeds or the budget runs out.

        The budget is ``max_attempts`` tries and, when ``timeout`` is given,
        a wall-clock limit on the handle's clock; whichever is hit first ends
        the loop. Contention is never raised, only reported as False.
        """
        if max_attempts is None and timeout is None:
            raise ConfigurationError("acquire() needs max_attempts, timeout, or both")
        if max_attempts is not None and max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be at least 1, got {max_attempts}")
        if retry_interval < 0:
            raise ConfigurationError(f"retry_interval must not be negative, got {retry_interval}")
        if timeout is not None and timeout < 0:
            raise ConfigurationError(f"timeout must not be negative, got {timeout}")

        started = self._clock()
        attempts = itertools.count(1) if max_attempts is None else range(1, max_attempts + 1)
        attempt = 0
        for attempt in attempts:
            if await self.try_acquire():
                if attempt > 1:
                    self.logger.info("Acquired %s after %d attempts", self.target.name, attempt)
                return True
            if max_attempts is not None and attempt >= max_attempts:
                break
            if timeout is not None and self._clock() - started + retry_interval > timeout:
                break
            await asyncio.sleep(retry_interval)

        self.logger.warning(
            "Gave up acquiring %s after %d attempts (%.2fs)",
            self.target.name,
            attempt,
            self._clock() - started,
        )
        return False

    # ---------- renewal ----------

    async def renew(self) -> None:
        """Restart the lease countdown; raises LeaseExpiredOnRenew if ownership is gone."""
        if self._state is not LockState.HELD or self._lease_id is None:
            raise LockStateError(f"Cannot renew {self.target.name}: lock is {self._state.value}")

        lease_id = self._lease_id
        if self._deadline is not None and self._clock() >= self._deadline:
            await self._mark_lost(lease_id, "deadline passed before renewal")
            raise LeaseExpiredOnRenew(self.target.name, lease_id)

        started = self._clock()
        try:
            await self.target.renew_lease(lease_id)
        except LeaseLostError as exc:
            await self._mark_lost(lease_id, str(exc))
            raise LeaseExpiredOnRenew(self.target.name, lease_id) from exc

        if self._lease_id != lease_id:
            return
        self._deadline = started + self.lease_duration
        self.logger.debug("Renewed lease %s on %s", lease_id, self.target.name)
        await self._record("renewed", duration=self.lease_duration)

    def start_auto_renew(self, interval: Optional[float] = None) -> asyncio.Task[None]:
        """Renew in the background every ``interval`` seconds (default: half the lease).

        The task ends when the lock is released or ownership is lost; await
        ``ownership_lost`` to react to the latter.
        """
        if self._state is not LockState.HELD:
            raise LockStateError(f"Cannot auto-renew {self.target.name}: lock is {self._state.value}")
        period = self.lease_duration / 2 if interval is None else interval
        if period <= 0 or period >= self.lease_duration:
            raise ConfigurationError(
                f"Renewal interval must be between 0 and {self.lease_duration}s, got {period}"
            )
        if self._renew_task is None or self._renew_task.done():
            self._renew_task = asyncio.create_task(
                self._auto_renew(period), name=f"cloudlock-renew-{self.target.name}"
            )
        return self._renew_task

    async def _auto_renew(self, period: float) -> None:
        while self._state is LockState.HELD:
            await asyncio.sleep(period)
            if self._state is not LockState.HELD:
                return
            try:
                await self.renew()
            except LeaseExpiredOnRenew:
                return
            except InfrastructureError as exc:
                self.logger.warning("Background renewal of %s failed: %s", self.target.name, exc)

    async def _stop_auto_renew(self) -> None:
        task, self._renew_task = self._renew_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ---------- release ----------

    async def release(self) -> None:
        """Give the lease back early; a no-op unless held."""
        if self._state is not LockState.HELD or self._lease_id is None:
            self._state = LockState.RELEASED
            return

        lease_id = self._lease_id
        self._clear(LockState.RELEASED)
        await self._stop_auto_renew()
        try:
            await self.target.release_lease(lease_id)
        except LeaseLostError:
            self.logger.warning("Lease %s on %s had already lapsed at release", lease_id, self.target.name)
            return
        self.logger.info("Released lease %s on %s", lease_id, self.target.name)
        await self._record("released", lease_id=lease_id)

    async def aclose(self) -> None:
        """Best-effort release for teardown paths; never raises Exception."""
        try:
            await self.release()
        except Exception as exc:
            self.logger.warning("Release of %s failed during teardown: %s", self.target.name, exc)
        finally:
            self._clear(LockState.RELEASED)

    async def __aenter__(self) -> "CloudLock":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ---------- guarded access ----------

    async def read(self) -> bytes:
        return await self.target.read(self.access_condition)

    async def write(self, data: bytes) -> None:
        await self.target.write(data, self.access_condition)

    # ---------- helpers ----------

    def _clear(self, state: LockState) -> None:
        self._state = state
        self._lease_id = None
        self._deadline = None

    async def _abandon(self, lease_id: str) -> None:
        try:
            await self.target.release_lease(lease_id)
        except (LeaseLostError, InfrastructureError):
            return
        self.logger.info("Released lease %s on %s after cancelled acquisition", lease_id, self.target.name)

    async def _mark_lost(self, lease_id: str, reason: str) -> None:
        self._clear(LockState.RELEASED)
        self.ownership_lost.set()
        self.logger.error("Lost lease %s on %s: %s", lease_id, self.target.name, reason)
        await self._record("lost", lease_id=lease_id, reason=reason)

    async def _record(self, event: str, **payload: Any) -> None:
        if self._audit is None:
            return
        data: Dict[str, Any] = {"lease_id": self._lease_id, **payload}
        try:
            await self._audit.log(event=event, target=self.target.name, payload=data)
        except Exception:
            self.logger.debug("Failed to persist audit log", exc_info=True)

    def __repr__(self) -> str:
        return f"CloudLock(target={self.target.name!r}, state={self._state.value}, lease_id={self._lease_id!r})"
