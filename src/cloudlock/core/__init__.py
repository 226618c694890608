"""Core lock protocol and storage backends."""

from .cloud_lock import CloudLock, validate_lease_duration
from .errors import (
    CloudLockError,
    ConfigurationError,
    InfrastructureError,
    LeaseConflictError,
    LeaseExpiredOnRenew,
    LeaseLostError,
    LockStateError,
)
from .lease import LeaseStore, LeaseTarget
from .lease_memory import InMemoryLeaseStore, InMemoryLeaseTarget
from .locks import AsyncLock, LockManager
from .models import MAXIMUM_LEASE_DURATION, MINIMUM_LEASE_DURATION, AccessCondition, LockState

__all__ = [
    "CloudLock",
    "validate_lease_duration",
    "CloudLockError",
    "ConfigurationError",
    "InfrastructureError",
    "LeaseConflictError",
    "LeaseExpiredOnRenew",
    "LeaseLostError",
    "LockStateError",
    "LeaseStore",
    "LeaseTarget",
    "InMemoryLeaseStore",
    "InMemoryLeaseTarget",
    "AsyncLock",
    "LockManager",
    "MAXIMUM_LEASE_DURATION",
    "MINIMUM_LEASE_DURATION",
    "AccessCondition",
    "LockState",
]
