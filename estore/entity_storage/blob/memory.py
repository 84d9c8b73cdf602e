"""
In-memory blob storage for tests and single-process development.

Several nodes in one process can share an instance to simulate a shared
blob store.
"""

from __future__ import annotations

import asyncio

from .base import blob_id, parse_blob_id


class MemoryBlobStorage:
    """In-memory implementation of BlobStorage."""

    backend = "memory"

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def set(self, data: bytes) -> str:
        id = blob_id(self.backend, data)
        async with self._lock:
            self._blobs[id] = bytes(data)
        return id

    async def get(self, id: str) -> bytes | None:
        parse_blob_id(id, self.backend)
        async with self._lock:
            return self._blobs.get(id)

    async def remove(self, id: str) -> bool:
        parse_blob_id(id, self.backend)
        async with self._lock:
            return self._blobs.pop(id, None) is not None

    # Testing helpers

    def get_store(self) -> dict[str, bytes]:
        return dict(self._blobs)

    def clear(self) -> None:
        self._blobs.clear()
