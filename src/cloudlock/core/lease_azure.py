"""
Azure Blob Storage backend - blob leases as the lock service.

Each lock target is one blob. The service grants at most one live lease per
blob, rejects a second acquisition with HTTP 409, and refuses writes, renewals
and releases that do not present the live lease id.
"""

from __future__ import annotations

import contextlib
from typing import Iterator, Optional, Type

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
)
from azure.storage.blob.aio import BlobClient, BlobLeaseClient, BlobServiceClient

from .errors import CloudLockError, InfrastructureError, LeaseConflictError, LeaseLostError
from .lease import LeaseStore
from .models import AccessCondition
from cloudlock.utils.logging import get_logger


logger = get_logger("AzureBlobLeaseStore")

_CONFLICT = 409
_PRECONDITION_FAILED = 412


@contextlib.contextmanager
def _azure_errors(
    name: str,
    *,
    rejected: Type[CloudLockError],
    lease_id: Optional[str] = None,
) -> Iterator[None]:
    """Map Azure SDK failures onto the cloudlock error taxonomy.

    ``rejected`` is raised for 409/412 answers: contention for acquisitions,
    a lost lease for everything that presents a lease id.
    """
    try:
        yield
    except ResourceNotFoundError as exc:
        raise InfrastructureError(name, "blob not found") from exc
    except HttpResponseError as exc:
        if exc.status_code in (_CONFLICT, _PRECONDITION_FAILED):
            if rejected is LeaseConflictError:
                raise LeaseConflictError(name) from exc
            raise LeaseLostError(name, lease_id) from exc
        raise InfrastructureError(name, f"storage request failed ({exc.status_code}): {exc.message}") from exc
    except AzureError as exc:
        raise InfrastructureError(name, f"storage request failed: {exc}") from exc


class AzureBlobLeaseTarget:
    """Lease operations and lease-conditioned data access on one blob."""

    def __init__(self, blob: BlobClient) -> None:
        self._blob = blob

    @property
    def name(self) -> str:
        return self._blob.blob_name

    async def acquire_lease(self, duration: int, proposed_lease_id: Optional[str] = None) -> str:
        lease = BlobLeaseClient(self._blob, lease_id=proposed_lease_id)
        with _azure_errors(self.name, rejected=LeaseConflictError):
            await lease.acquire(lease_duration=duration)
        return lease.id

    async def renew_lease(self, lease_id: str) -> None:
        lease = BlobLeaseClient(self._blob, lease_id=lease_id)
        with _azure_errors(self.name, rejected=LeaseLostError, lease_id=lease_id):
            await lease.renew()

    async def release_lease(self, lease_id: str) -> None:
        lease = BlobLeaseClient(self._blob, lease_id=lease_id)
        with _azure_errors(self.name, rejected=LeaseLostError, lease_id=lease_id):
            await lease.release()

    async def read(self, condition: Optional[AccessCondition] = None) -> bytes:
        lease_id = condition.lease_id if condition is not None else None
        with _azure_errors(self.name, rejected=LeaseLostError, lease_id=lease_id):
            downloader = await self._blob.download_blob(lease=lease_id)
            return await downloader.readall()

    async def write(self, data: bytes, condition: Optional[AccessCondition] = None) -> None:
        lease_id = condition.lease_id if condition is not None else None
        with _azure_errors(self.name, rejected=LeaseLostError, lease_id=lease_id):
            await self._blob.upload_blob(bytes(data), overwrite=True, lease=lease_id)


class AzureBlobLeaseStore(LeaseStore):
    """
    Lock targets backed by blobs in a single container.

    Args:
        connection_string: Azure Storage connection string
            (``UseDevelopmentStorage=true`` for Azurite)
        container: Container holding the guarded blobs
    """

    def __init__(self, connection_string: str, container: str = "cloudlock") -> None:
        self.container_name = container
        self._service = BlobServiceClient.from_connection_string(connection_string)
        self._container = self._service.get_container_client(container)

    async def ensure_container(self) -> None:
        """Create the container if it doesn't exist."""
        try:
            await self._container.create_container()
            logger.info("Created container %s", self.container_name)
        except ResourceExistsError:
            pass
        except AzureError as exc:
            raise InfrastructureError(self.container_name, f"cannot create container: {exc}") from exc

    async def delete_container(self) -> None:
        with _azure_errors(self.container_name, rejected=LeaseLostError):
            await self._container.delete_container()

    def target(self, name: str) -> AzureBlobLeaseTarget:
        return AzureBlobLeaseTarget(self._container.get_blob_client(name))

    async def create(self, name: str, data: bytes = b"") -> AzureBlobLeaseTarget:
        target = self.target(name)
        await target.write(data)
        return target

    async def delete(self, name: str) -> None:
        blob = self._container.get_blob_client(name)
        try:
            await blob.delete_blob()
        except ResourceNotFoundError:
            return
        except AzureError as exc:
            raise InfrastructureError(name, f"cannot delete blob: {exc}") from exc

    async def close(self) -> None:
        await self._service.close()
