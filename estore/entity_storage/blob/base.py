"""
Blob storage contract.

Blobs are immutable byte strings addressed by the sha256 of their content:
``blob:<backend>:<hex digest>``. Change-sets and sync states are stored as
blobs, so two nodes writing the same bytes get the same id.

Invariants:
    - set() is idempotent for identical content
    - get() of an unknown id returns None, never raises
    - remove() returns False when the blob did not exist

How to change safely:
    - The id format is shared by every node; never change the prefix
"""

from __future__ import annotations

import hashlib
from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from ..errors import ConfigurationError, GuardError

if TYPE_CHECKING:
    from ..config import BlobStorageConfig

BLOB_ID_PREFIX = "blob"


def blob_id(backend: str, data: bytes) -> str:
    """Compute the content address of a blob."""
    return f"{BLOB_ID_PREFIX}:{backend}:{hashlib.sha256(data).hexdigest()}"


def parse_blob_id(id: str, backend: str | None = None) -> str:
    """Validate a blob id and return its hex digest.

    Args:
        id: The blob id
        backend: Expected backend name, if any

    Raises:
        GuardError: If the id is malformed or names another backend
    """
    parts = id.split(":") if isinstance(id, str) else []
    if (
        len(parts) != 3
        or parts[0] != BLOB_ID_PREFIX
        or len(parts[2]) != 64
        or any(c not in "0123456789abcdef" for c in parts[2])
    ):
        raise GuardError("BlobStorage", "id", f"Invalid blob id '{id}'")
    if backend is not None and parts[1] != backend:
        raise GuardError("BlobStorage", "id", f"Blob '{id}' does not belong to '{backend}'")
    return parts[2]


@runtime_checkable
class BlobStorage(Protocol):
    """Protocol for blob storage backends."""

    @abstractmethod
    async def set(self, data: bytes) -> str:
        """Store bytes and return their blob id."""
        ...

    @abstractmethod
    async def get(self, id: str) -> bytes | None:
        """Load a blob, None when it does not exist."""
        ...

    @abstractmethod
    async def remove(self, id: str) -> bool:
        """Remove a blob, returning whether it existed."""
        ...


def create_blob_storage(config: BlobStorageConfig) -> BlobStorage:
    """Factory function to create blob storage from configuration.

    Raises:
        ConfigurationError: If the backend is not supported
    """
    from ..config import BlobBackend

    if config.backend == BlobBackend.MEMORY:
        from .memory import MemoryBlobStorage

        return MemoryBlobStorage()
    if config.backend == BlobBackend.FILE:
        from .file import FileBlobStorage

        return FileBlobStorage(config.directory)
    if config.backend == BlobBackend.S3:
        from .s3 import S3BlobStorage

        return S3BlobStorage(config.s3)
    raise ConfigurationError(f"Unsupported blob backend: {config.backend}")
