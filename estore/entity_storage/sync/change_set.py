"""
Change-set storage, signing and application.

A change-set is stored as a gzip-compressed JSON blob. Its proof binds the
producing node identity to the unsigned form: the proof's verification
method must belong to ``nodeIdentity``, otherwise the change-set does not
verify even when the signature itself is valid.

Invariants:
    - A change-set that does not verify is never applied
    - Changes are applied in order; on_progress is awaited after each one so
      an interrupted application can resume after the last applied index
    - Applying the same change-set twice leaves the store unchanged
    - A "set" whose entity dateModified is older than the stored entity's
      dateModified is skipped (last writer wins)
"""

from __future__ import annotations

import gzip
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..blob import BlobStorage
from ..connectors.base import EntityStorageConnector
from ..errors import SignatureInvalidError
from ..identity import IdentityConnector, split_verification_method
from .models import SyncChangeSet, SyncOperation

logger = logging.getLogger(__name__)

NODE_IDENTITY = "nodeIdentity"
DATE_MODIFIED = "dateModified"

ProgressCallback = Callable[[int], Awaitable[None]]


def _is_older(incoming: Any, stored: Any) -> bool:
    # ISO-8601 UTC timestamps written by the nodes compare lexicographically
    if not isinstance(incoming, str) or not isinstance(stored, str):
        return False
    return incoming < stored


class ChangeSetHelper:
    """Reads, writes, signs, verifies and applies change-sets.

    Args:
        entity_connector: Store the changes are applied to (never the
            synchronised wrapper, so applied changes are not re-captured)
        blob_storage: Where change-set blobs live
        identity: Signs and verifies change-sets
        method_id: Verification method id used when signing
    """

    def __init__(
        self,
        entity_connector: EntityStorageConnector,
        blob_storage: BlobStorage,
        identity: IdentityConnector,
        method_id: str,
    ) -> None:
        self._connector = entity_connector
        self._blob_storage = blob_storage
        self._identity = identity
        self._method_id = method_id
        self._primary_key = entity_connector.get_schema().primary_key.property

    async def get_change_set(self, change_set_storage_id: str) -> SyncChangeSet | None:
        """Load a change-set blob, None when the blob is missing or unreadable."""
        data = await self._blob_storage.get(change_set_storage_id)
        if data is None:
            logger.warning("Change-set blob missing", extra={"change_set": change_set_storage_id})
            return None
        try:
            return SyncChangeSet.from_dict(json.loads(gzip.decompress(data)))
        except (OSError, ValueError, KeyError) as err:
            logger.error(
                "Change-set blob unreadable",
                extra={"change_set": change_set_storage_id, "error": str(err)},
            )
            return None

    async def store_change_set(self, change_set: SyncChangeSet) -> str:
        payload = json.dumps(change_set.to_dict(), separators=(",", ":")).encode("utf-8")
        change_set_storage_id = await self._blob_storage.set(gzip.compress(payload))
        logger.debug(
            "Change-set stored",
            extra={
                "change_set": change_set_storage_id,
                "changes": len(change_set.changes),
            },
        )
        return change_set_storage_id

    async def create_change_set_proof(self, change_set: SyncChangeSet) -> dict[str, Any]:
        return await self._identity.create_proof(
            change_set.node_identity,
            f"{change_set.node_identity}#{self._method_id}",
            change_set.unsigned_dict(),
        )

    async def verify_change_set_proof(self, change_set: SyncChangeSet) -> bool:
        """Whether the change-set carries a valid proof by its own node identity."""
        proof = change_set.proof
        if not proof:
            return False
        try:
            signer, _ = split_verification_method(str(proof.get("verificationMethod") or ""))
        except ValueError:
            return False
        if signer != change_set.node_identity:
            logger.warning(
                "Change-set signed by another identity",
                extra={"change_set_id": change_set.id, "signer": signer},
            )
            return False
        return await self._identity.verify_proof(change_set.unsigned_dict(), proof)

    async def apply_change_set(
        self,
        change_set: SyncChangeSet,
        start_index: int = 0,
        on_progress: ProgressCallback | None = None,
    ) -> int:
        """Apply the changes of a verified change-set to the entity store.

        Args:
            change_set: The change-set
            start_index: First change to apply (resume position)
            on_progress: Awaited with the index of every processed change

        Returns:
            Number of changes written (skipped stale sets are not counted)
        """
        written = 0
        for index in range(start_index, len(change_set.changes)):
            change = change_set.changes[index]
            if change.operation == SyncOperation.SET and change.entity is not None:
                if await self._apply_set(change_set, change.entity):
                    written += 1
            elif change.operation == SyncOperation.DELETE and change.id is not None:
                await self._connector.remove(change.id)
                written += 1
            if on_progress is not None:
                await on_progress(index)
        logger.debug(
            "Change-set applied",
            extra={
                "change_set_id": change_set.id,
                "node_identity": change_set.node_identity,
                "written": written,
            },
        )
        return written

    async def _apply_set(self, change_set: SyncChangeSet, entity: dict[str, Any]) -> bool:
        entity = dict(entity)
        entity.setdefault(NODE_IDENTITY, change_set.node_identity)
        existing = await self._connector.get(entity[self._primary_key])
        if existing is not None and _is_older(
            entity.get(DATE_MODIFIED), existing.get(DATE_MODIFIED)
        ):
            logger.debug(
                "Stale change skipped",
                extra={"change_set_id": change_set.id, "id": entity[self._primary_key]},
            )
            return False
        await self._connector.set(entity)
        return True

    async def get_and_apply_change_set(
        self,
        change_set_storage_id: str,
        start_index: int = 0,
        on_progress: ProgressCallback | None = None,
    ) -> SyncChangeSet | None:
        """Load, verify and apply a change-set.

        Returns:
            The applied change-set, None when the blob is missing

        Raises:
            SignatureInvalidError: If the proof does not verify
        """
        change_set = await self.get_change_set(change_set_storage_id)
        if change_set is None:
            return None
        if not await self.verify_change_set_proof(change_set):
            logger.error(
                "Change-set proof invalid",
                extra={"change_set": change_set_storage_id, "node_identity": change_set.node_identity},
            )
            raise SignatureInvalidError(change_set.id, change_set.node_identity)
        await self.apply_change_set(change_set, start_index, on_progress)
        return change_set
