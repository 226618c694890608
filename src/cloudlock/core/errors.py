"""Error taxonomy shared by lock handles and storage backends."""

from __future__ import annotations

from typing import Optional


class CloudLockError(Exception):
    """Base class for every error raised by cloudlock."""


class ConfigurationError(CloudLockError, ValueError):
    """Invalid lease duration, retry budget or settings."""


class InfrastructureError(CloudLockError):
    """The storage service could not be reached or refused the request."""

    def __init__(self, target: str, message: str) -> None:
        self.target = target
        super().__init__(f"{target}: {message}")


class LeaseConflictError(CloudLockError):
    """Another holder owns a live lease on the target."""

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(f"{target}: lease is held by another owner")


class LeaseLostError(CloudLockError):
    """The presented lease id is not the live lease of the target."""

    def __init__(self, target: str, lease_id: Optional[str], message: Optional[str] = None) -> None:
        self.target = target
        self.lease_id = lease_id
        super().__init__(message or f"{target}: lease {lease_id!r} is not the live lease")


class LeaseExpiredOnRenew(LeaseLostError):
    """Renewal came too late; ownership of the target may already be gone."""

    def __init__(self, target: str, lease_id: Optional[str]) -> None:
        super().__init__(
            target,
            lease_id,
            f"{target}: lease {lease_id!r} expired before it could be renewed",
        )


class LockStateError(CloudLockError, RuntimeError):
    """Operation not allowed in the handle's current state."""
