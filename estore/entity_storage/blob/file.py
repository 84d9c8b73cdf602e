"""
Directory-backed blob storage.

Each blob is one file named by its sha256 digest. Files are written to a
temp name and renamed, so a reader never sees a partial blob.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from ..errors import BackendUnavailableError, ConfigurationError
from .base import blob_id, parse_blob_id

logger = logging.getLogger(__name__)


class FileBlobStorage:
    """File implementation of BlobStorage.

    Args:
        directory: Directory holding the blob files (created on first write)
    """

    backend = "file"

    def __init__(self, directory: str) -> None:
        if not directory:
            raise ConfigurationError("File blob storage requires a directory")
        self._directory = Path(directory)

    def _run(self, fn: Any, *args: Any) -> Any:
        return asyncio.get_running_loop().run_in_executor(None, fn, *args)

    def _write(self, digest: str, data: bytes) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        target = self._directory / digest
        if target.exists():
            return
        fd, tmp_path = tempfile.mkstemp(dir=self._directory, prefix=f".{digest}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _read(self, digest: str) -> bytes | None:
        path = self._directory / digest
        if not path.exists():
            return None
        return path.read_bytes()

    def _delete(self, digest: str) -> bool:
        path = self._directory / digest
        if not path.exists():
            return False
        path.unlink()
        return True

    async def set(self, data: bytes) -> str:
        id = blob_id(self.backend, data)
        try:
            await self._run(self._write, parse_blob_id(id), bytes(data))
        except OSError as err:
            raise BackendUnavailableError(
                "Blob write failed", operation="blobSet", container=str(self._directory), inner=err
            ) from err
        logger.debug("Blob stored", extra={"blob_id": id, "size": len(data)})
        return id

    async def get(self, id: str) -> bytes | None:
        digest = parse_blob_id(id, self.backend)
        try:
            return await self._run(self._read, digest)
        except OSError as err:
            raise BackendUnavailableError(
                "Blob read failed", operation="blobGet", container=str(self._directory), inner=err
            ) from err

    async def remove(self, id: str) -> bool:
        digest = parse_blob_id(id, self.backend)
        try:
            return await self._run(self._delete, digest)
        except OSError as err:
            raise BackendUnavailableError(
                "Blob remove failed",
                operation="blobRemove",
                container=str(self._directory),
                inner=err,
            ) from err
