"""Content-addressed blob storage used by the sync engine."""

from .base import BlobStorage, blob_id, create_blob_storage, parse_blob_id
from .file import FileBlobStorage
from .memory import MemoryBlobStorage

__all__ = [
    "BlobStorage",
    "FileBlobStorage",
    "MemoryBlobStorage",
    "blob_id",
    "create_blob_storage",
    "parse_blob_id",
]
