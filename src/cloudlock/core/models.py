"""Value types shared across the cloudlock runtime."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


# Service-enforced bounds on a lease, in seconds.
MINIMUM_LEASE_DURATION = 15
MAXIMUM_LEASE_DURATION = 60


class LockState(str, Enum):
    """Client-side lifecycle of a lock handle.

    There is no expired state: expiry is only discovered when the service
    rejects an operation.
    """

    UNACQUIRED = "unacquired"
    HELD = "held"
    RELEASED = "released"


@dataclass(frozen=True, slots=True)
class AccessCondition:
    """Precondition attached to reads and writes on a guarded object."""

    lease_id: Optional[str] = None

    @classmethod
    def for_lease(cls, lease_id: str) -> "AccessCondition":
        return cls(lease_id=lease_id)
