"""
JSON-file verifiable storage.

All keys live in one JSON document ``{key: [revision, ...]}`` that is
replaced atomically on every append.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from ..errors import BackendUnavailableError, ConfigurationError, GuardError, NotFoundError
from .base import VerifiableItem, next_revision, verify_chain

logger = logging.getLogger(__name__)


class FileVerifiableStorage:
    """File implementation of VerifiableStorage.

    Args:
        path: Path of the JSON document (created on first append)
    """

    source = "FileVerifiableStorage"

    def __init__(self, path: str) -> None:
        if not path:
            raise ConfigurationError("File verifiable storage requires a path")
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _run(self, fn: Any, *args: Any) -> Any:
        return asyncio.get_running_loop().run_in_executor(None, fn, *args)

    def _load(self) -> dict[str, list[dict[str, Any]]]:
        if not self._path.exists():
            return {}
        with open(self._path, encoding="utf-8") as handle:
            return json.load(handle)

    def _save(self, document: dict[str, list[dict[str, Any]]]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".verifiable.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, separators=(",", ":"))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _append(self, key: str, data: dict[str, Any]) -> VerifiableItem:
        document = self._load()
        revisions = document.setdefault(key, [])
        previous = VerifiableItem.from_dict(revisions[-1]) if revisions else None
        item = next_revision(key, data, previous)
        revisions.append(item.to_dict())
        self._save(document)
        return item

    def _revisions(self, key: str) -> list[VerifiableItem]:
        return [VerifiableItem.from_dict(r) for r in self._load().get(key, [])]

    async def create(self, key: str, data: dict[str, Any]) -> VerifiableItem:
        if not key:
            raise GuardError(self.source, "key")
        try:
            async with self._lock:
                item = await self._run(self._append, key, data)
        except (OSError, ValueError) as err:
            raise BackendUnavailableError(
                "Verifiable storage write failed",
                operation="verifiableCreate",
                container=str(self._path),
                inner=err,
            ) from err
        logger.debug("Verifiable revision appended", extra={"key": key, "revision": item.revision})
        return item

    async def get(self, key: str) -> VerifiableItem:
        try:
            async with self._lock:
                revisions = await self._run(self._revisions, key)
        except (OSError, ValueError) as err:
            raise BackendUnavailableError(
                "Verifiable storage read failed",
                operation="verifiableGet",
                container=str(self._path),
                inner=err,
            ) from err
        if not revisions:
            raise NotFoundError(self.source, key)
        return revisions[-1]

    async def verify(self, key: str) -> bool:
        async with self._lock:
            revisions = await self._run(self._revisions, key)
        return verify_chain(revisions)
