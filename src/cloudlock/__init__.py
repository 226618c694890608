"""Mutual exclusion over lease-capable object storage."""

from .core import (
    CloudLock,
    ConfigurationError,
    InfrastructureError,
    LeaseExpiredOnRenew,
    LeaseLostError,
    LockManager,
    LockState,
)

__all__ = [
    "__version__",
    "CloudLock",
    "ConfigurationError",
    "InfrastructureError",
    "LeaseExpiredOnRenew",
    "LeaseLostError",
    "LockManager",
    "LockState",
]

__version__ = "0.1.0"
