"""Self-hosted lease service on Redis: expiring lease hashes guarded by Lua scripts."""

from __future__ import annotations

import contextlib
import os
import uuid
from typing import Iterator, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .errors import InfrastructureError, LeaseConflictError, LeaseLostError
from .lease import LeaseStore
from .models import MAXIMUM_LEASE_DURATION, MINIMUM_LEASE_DURATION, AccessCondition


# KEYS[1] lease hash {id, ttl}, KEYS[2] data key; ARGV[1] lease id, ARGV[2] ttl ms.
_ACQUIRE = """
if redis.call('exists', KEYS[2]) == 0 then
    return -1
end
local current = redis.call('hget', KEYS[1], 'id')
if current == false then
    redis.call('hset', KEYS[1], 'id', ARGV[1], 'ttl', ARGV[2])
    redis.call('pexpire', KEYS[1], ARGV[2])
    return 1
end
if current == ARGV[1] then
    redis.call('hset', KEYS[1], 'ttl', ARGV[2])
    redis.call('pexpire', KEYS[1], ARGV[2])
    return 1
end
return 0
"""

_RENEW = """
if redis.call('exists', KEYS[2]) == 0 then
    return -1
end
if redis.call('hget', KEYS[1], 'id') == ARGV[1] then
    redis.call('pexpire', KEYS[1], redis.call('hget', KEYS[1], 'ttl'))
    return 1
end
return 0
"""

_RELEASE = """
if redis.call('exists', KEYS[2]) == 0 then
    return -1
end
if redis.call('hget', KEYS[1], 'id') == ARGV[1] then
    redis.call('del', KEYS[1])
    return 1
end
return 0
"""

# ARGV[1] presented lease id or ''.
_READ = """
local data = redis.call('get', KEYS[2])
if data == false then
    return {-1}
end
if ARGV[1] ~= '' and redis.call('hget', KEYS[1], 'id') ~= ARGV[1] then
    return {0}
end
return {1, data}
"""

# ARGV[1] presented lease id or '', ARGV[2] payload, ARGV[3] '1' to allow creation.
_WRITE = """
if ARGV[3] ~= '1' and redis.call('exists', KEYS[2]) == 0 then
    return -1
end
local current = redis.call('hget', KEYS[1], 'id')
if current == false then
    if ARGV[1] ~= '' then
        return 0
    end
elseif current ~= ARGV[1] then
    return 0
end
redis.call('set', KEYS[2], ARGV[2])
return 1
"""


@contextlib.contextmanager
def _redis_errors(name: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise InfrastructureError(name, f"redis request failed: {exc}") from exc


class RedisLeaseTarget:
    """One guarded object: a data key plus a lease hash that expires on its own."""

    def __init__(self, redis: Redis, name: str, *, prefix: str) -> None:
        self._redis = redis
        self._name = name
        self._lease_key = f"{prefix}:lease:{name}"
        self._data_key = f"{prefix}:data:{name}"

    @property
    def name(self) -> str:
        return self._name

    async def _call(self, script: str, *args: object) -> object:
        with _redis_errors(self._name):
            return await self._redis.eval(script, 2, self._lease_key, self._data_key, *args)

    def _check(self, status: object, lease_id: Optional[str]) -> None:
        if status == -1:
            raise InfrastructureError(self._name, "object not found")
        if status == 0:
            raise LeaseLostError(self._name, lease_id)

    async def acquire_lease(self, duration: int, proposed_lease_id: Optional[str] = None) -> str:
        if not MINIMUM_LEASE_DURATION <= duration <= MAXIMUM_LEASE_DURATION:
            raise InfrastructureError(self._name, f"invalid lease duration {duration}")
        lease_id = proposed_lease_id or str(uuid.uuid4())
        ttl_ms = int(duration * 1000)
        status = await self._call(_ACQUIRE, lease_id, ttl_ms)
        if status == -1:
            raise InfrastructureError(self._name, "object not found")
        if status == 0:
            raise LeaseConflictError(self._name)
        return lease_id

    async def renew_lease(self, lease_id: str) -> None:
        self._check(await self._call(_RENEW, lease_id), lease_id)

    async def release_lease(self, lease_id: str) -> None:
        self._check(await self._call(_RELEASE, lease_id), lease_id)

    async def read(self, condition: Optional[AccessCondition] = None) -> bytes:
        presented = condition.lease_id if condition is not None else None
        result = await self._call(_READ, presented or "")
        self._check(result[0], presented)
        return result[1]

    async def write(self, data: bytes, condition: Optional[AccessCondition] = None) -> None:
        await self._write(data, condition, create=False)

    async def _write(self, data: bytes, condition: Optional[AccessCondition], *, create: bool) -> None:
        presented = condition.lease_id if condition is not None else None
        status = await self._call(_WRITE, presented or "", bytes(data), "1" if create else "0")
        self._check(status, presented)


class RedisLeaseStore(LeaseStore):
    def __init__(self, url: Optional[str] = None, *, prefix: str = "cloudlock") -> None:
        self._redis = Redis.from_url(url or os.getenv("REDIS_URL", "redis://localhost:6379/0"))
        self._prefix = prefix

    def target(self, name: str) -> RedisLeaseTarget:
        return RedisLeaseTarget(self._redis, name, prefix=self._prefix)

    async def create(self, name: str, data: bytes = b"") -> RedisLeaseTarget:
        target = self.target(name)
        await target._write(data, None, create=True)
        return target

    async def delete(self, name: str) -> None:
        with _redis_errors(name):
            await self._redis.delete(f"{self._prefix}:lease:{name}", f"{self._prefix}:data:{name}")

    async def close(self) -> None:
        await self._redis.aclose()
