"""
Verifiable storage contract.

Each key holds an append-only list of revisions. Every revision carries
the sha256 of (previous hash + canonical JSON of its data), so any edit of
an earlier revision breaks the chain and verify() reports it.

Invariants:
    - Revisions are never rewritten, only appended
    - get() returns the latest revision
    - The canonical encoding is sorted-key compact JSON

How to change safely:
    - Changing the hash input invalidates every stored chain
"""

from __future__ import annotations

import hashlib
import json
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..errors import ConfigurationError

if TYPE_CHECKING:
    from ..config import VerifiableStorageConfig

GENESIS_HASH = "0" * 64


def _canonical(data: Any) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _revision_hash(previous_hash: str, data: dict[str, Any]) -> str:
    return hashlib.sha256(previous_hash.encode("ascii") + _canonical(data)).hexdigest()


@dataclass(frozen=True)
class VerifiableItem:
    """One revision of a verifiable key.

    Attributes:
        key: The item key
        data: JSON object stored in this revision
        revision: 0-based revision number
        hash: Chain hash of this revision
        previous_hash: Chain hash of the previous revision
        date_created: ISO timestamp of the revision
    """

    key: str
    data: dict[str, Any]
    revision: int
    hash: str
    previous_hash: str
    date_created: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "data": self.data,
            "revision": self.revision,
            "hash": self.hash,
            "previousHash": self.previous_hash,
            "dateCreated": self.date_created,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerifiableItem:
        return cls(
            key=data["key"],
            data=data["data"],
            revision=data["revision"],
            hash=data["hash"],
            previous_hash=data["previousHash"],
            date_created=data["dateCreated"],
        )


def next_revision(
    key: str,
    data: dict[str, Any],
    previous: VerifiableItem | None,
) -> VerifiableItem:
    """Build the revision that follows ``previous`` in the chain."""
    previous_hash = previous.hash if previous is not None else GENESIS_HASH
    return VerifiableItem(
        key=key,
        data=json.loads(_canonical(data)),
        revision=previous.revision + 1 if previous is not None else 0,
        hash=_revision_hash(previous_hash, data),
        previous_hash=previous_hash,
        date_created=datetime.now(timezone.utc).isoformat(),
    )


def verify_chain(revisions: list[VerifiableItem]) -> bool:
    """Check that the revisions form an unbroken hash chain."""
    previous_hash = GENESIS_HASH
    for index, item in enumerate(revisions):
        if item.revision != index or item.previous_hash != previous_hash:
            return False
        if item.hash != _revision_hash(previous_hash, item.data):
            return False
        previous_hash = item.hash
    return bool(revisions)


@runtime_checkable
class VerifiableStorage(Protocol):
    """Protocol for verifiable storage backends."""

    @abstractmethod
    async def create(self, key: str, data: dict[str, Any]) -> VerifiableItem:
        """Append a revision for key (creating the key when new)."""
        ...

    @abstractmethod
    async def get(self, key: str) -> VerifiableItem:
        """Latest revision of key.

        Raises:
            NotFoundError: If the key has never been written
        """
        ...

    @abstractmethod
    async def verify(self, key: str) -> bool:
        """Whether the chain of key is intact (False for unknown keys)."""
        ...


def create_verifiable_storage(config: VerifiableStorageConfig) -> VerifiableStorage:
    """Factory function to create verifiable storage from configuration.

    Raises:
        ConfigurationError: If the backend is not supported
    """
    from ..config import VerifiableBackend

    if config.backend == VerifiableBackend.MEMORY:
        from .memory import MemoryVerifiableStorage

        return MemoryVerifiableStorage()
    if config.backend == VerifiableBackend.FILE:
        from .file import FileVerifiableStorage

        return FileVerifiableStorage(config.path)
    raise ConfigurationError(f"Unsupported verifiable backend: {config.backend}")
