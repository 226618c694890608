"""Abstract interfaces for lease-capable storage backends."""

from __future__ import annotations

import abc
from typing import Optional, Protocol

from .models import AccessCondition


class LeaseTarget(Protocol):
    """One remote object offering lease and lease-conditional data operations.

    Implementations translate their native failures into the cloudlock error
    taxonomy: ``LeaseConflictError`` when another live lease blocks an
    acquisition, ``LeaseLostError`` when a presented lease id is not the live
    lease, ``InfrastructureError`` for everything else.
    """

    @property
    def name(self) -> str: ...

    async def acquire_lease(self, duration: int, proposed_lease_id: Optional[str] = None) -> str: ...

    async def renew_lease(self, lease_id: str) -> None: ...

    async def release_lease(self, lease_id: str) -> None: ...

    async def read(self, condition: Optional[AccessCondition] = None) -> bytes: ...

    async def write(self, data: bytes, condition: Optional[AccessCondition] = None) -> None: ...


class LeaseStore(abc.ABC):
    """Connection to a lease service that hands out per-object targets."""

    @abc.abstractmethod
    def target(self, name: str) -> LeaseTarget:  # pragma: no cover - interface
        """Return a reference to ``name``; no I/O is performed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def create(self, name: str, data: bytes = b"") -> LeaseTarget:  # pragma: no cover - interface
        """Create or overwrite ``name`` with ``data`` and return its target."""
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, name: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        """Release client resources held by the store."""
