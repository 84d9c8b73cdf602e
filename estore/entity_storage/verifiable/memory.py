"""
In-memory verifiable storage for tests and single-process development.
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import Any

from ..errors import GuardError, NotFoundError
from .base import VerifiableItem, next_revision, verify_chain


class MemoryVerifiableStorage:
    """In-memory implementation of VerifiableStorage."""

    source = "MemoryVerifiableStorage"

    def __init__(self) -> None:
        self._items: dict[str, list[VerifiableItem]] = {}
        self._lock = asyncio.Lock()

    async def create(self, key: str, data: dict[str, Any]) -> VerifiableItem:
        if not key:
            raise GuardError(self.source, "key")
        async with self._lock:
            revisions = self._items.setdefault(key, [])
            item = next_revision(key, data, revisions[-1] if revisions else None)
            revisions.append(item)
            return item

    async def get(self, key: str) -> VerifiableItem:
        async with self._lock:
            revisions = self._items.get(key)
            if not revisions:
                raise NotFoundError(self.source, key)
            return revisions[-1]

    async def verify(self, key: str) -> bool:
        async with self._lock:
            return verify_chain(list(self._items.get(key, [])))

    # Testing helpers

    def tamper(self, key: str, revision: int, data: dict[str, Any]) -> None:
        """Overwrite the data of a stored revision without re-hashing."""
        revisions = self._items[key]
        revisions[revision] = dataclasses.replace(revisions[revision], data=data)
