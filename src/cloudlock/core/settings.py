"""Runtime settings loader and backend factory."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from cloudlock.core.errors import ConfigurationError
from cloudlock.core.lease import LeaseStore
from cloudlock.core.locks import LockManager
from cloudlock.core.models import MAXIMUM_LEASE_DURATION, MINIMUM_LEASE_DURATION
from cloudlock.services.audit_logger import AuditLogger
from cloudlock.utils.env import get_bool_env, get_str_env


class RedisSettings(BaseModel):
    url: str = "redis://localhost:6379/0"
    prefix: str = "cloudlock"


class AzureBlobSettings(BaseModel):
    connection_string: Optional[str] = None  # "UseDevelopmentStorage=true" targets Azurite
    container: str = "cloudlock"


class LockSettings(BaseModel):
    backend: Literal["memory", "redis", "azure"] = "memory"
    redis: RedisSettings = Field(default_factory=RedisSettings)
    azure: AzureBlobSettings = Field(default_factory=AzureBlobSettings)
    lease_duration: int = Field(default=MINIMUM_LEASE_DURATION, ge=MINIMUM_LEASE_DURATION, le=MAXIMUM_LEASE_DURATION)
    max_attempts: int = Field(default=10, ge=1)
    retry_interval: float = Field(default=1.0, gt=0)
    audit_log_path: Optional[Path] = None

    @classmethod
    def from_file(cls, path: Path) -> "LockSettings":
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot read lock settings from {path}: {exc}") from exc
        settings = cls._validate(data)
        if settings.audit_log_path and not settings.audit_log_path.is_absolute():
            settings.audit_log_path = (path.parent / settings.audit_log_path).resolve()
        return settings

    @classmethod
    def from_env(cls) -> "LockSettings":
        """Build settings from CLOUDLOCK_* and the usual Redis/Azure variables."""
        data: dict = {
            "backend": get_str_env("CLOUDLOCK_BACKEND", default="memory"),
            "redis": {"url": get_str_env("REDIS_URL", default=RedisSettings().url)},
            "azure": {
                "connection_string": get_str_env("AZURE_STORAGE_CONNECTION_STRING"),
                "container": get_str_env("AZURE_STORAGE_CONTAINER", default=AzureBlobSettings().container),
            },
        }
        for key, env in (
            ("lease_duration", "CLOUDLOCK_LEASE_DURATION"),
            ("max_attempts", "CLOUDLOCK_MAX_ATTEMPTS"),
            ("retry_interval", "CLOUDLOCK_RETRY_INTERVAL"),
        ):
            value = get_str_env(env)
            if value is not None:
                data[key] = value
        audit_path = get_str_env("CLOUDLOCK_AUDIT_LOG")
        if audit_path:
            data["audit_log_path"] = audit_path
        elif get_bool_env("CLOUDLOCK_AUDIT"):
            data["audit_log_path"] = "artifacts/lease-audit.log"
        return cls._validate(data)

    @classmethod
    def _validate(cls, data: dict) -> "LockSettings":
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid lock settings: {exc}") from exc


def create_lease_store(settings: LockSettings) -> LeaseStore:
    """Instantiate the configured backend; client libraries are imported lazily."""
    if settings.backend == "redis":
        from cloudlock.core.lease_redis import RedisLeaseStore

        return RedisLeaseStore(settings.redis.url, prefix=settings.redis.prefix)
    if settings.backend == "azure":
        if not settings.azure.connection_string:
            raise ConfigurationError("Azure backend selected but no connection string is configured")
        from cloudlock.core.lease_azure import AzureBlobLeaseStore

        return AzureBlobLeaseStore(settings.azure.connection_string, settings.azure.container)

    from cloudlock.core.lease_memory import InMemoryLeaseStore

    return InMemoryLeaseStore()


def create_lock_manager(settings: LockSettings, store: Optional[LeaseStore] = None) -> LockManager:
    audit_logger = AuditLogger(settings.audit_log_path) if settings.audit_log_path else None
    return LockManager(
        store or create_lease_store(settings),
        lease_duration=settings.lease_duration,
        max_attempts=settings.max_attempts,
        retry_interval=settings.retry_interval,
        audit_logger=audit_logger,
    )
