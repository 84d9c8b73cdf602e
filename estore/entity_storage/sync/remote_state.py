"""
Remote synchronisation state.

The shared state is a JSON blob ``{snapshots: [...]}``; the verifiable
storage key holds a pointer ``{syncPointerId}`` to the blob currently in
force. Updating the state writes a new blob and appends a pointer revision,
so every historical state stays addressable and the pointer chain is
tamper-evident.

Invariants:
    - Only the authoritative node calls the mutating methods
    - State read-modify-write is serialised by an asyncio lock; share one
      helper between the sync service and the trusted service of a node
    - Appending an already listed change-set id is a no-op on the list
    - A pointer whose revision chain does not verify is treated as missing
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Any

from ..blob import BlobStorage
from ..conditions.model import SortProperty
from ..connectors.base import EntityStorageConnector
from ..errors import NotFoundError
from ..schema import SortDirection
from ..verifiable import VerifiableItem, VerifiableStorage
from .change_set import NODE_IDENTITY, ChangeSetHelper
from .models import (
    SyncChange,
    SyncChangeSet,
    SyncOperation,
    SyncSnapshot,
    SyncState,
    VerifiableSyncPointer,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RemoteSyncStateHelper:
    """Builds change-sets and maintains the shared sync state.

    Args:
        entity_connector: Store the change-set entities are read from
        blob_storage: Holds change-sets and sync states
        verifiable_storage: Holds the sync pointer
        change_set_helper: Signs and stores change-sets
    """

    def __init__(
        self,
        entity_connector: EntityStorageConnector,
        blob_storage: BlobStorage,
        verifiable_storage: VerifiableStorage,
        change_set_helper: ChangeSetHelper,
    ) -> None:
        self._connector = entity_connector
        self._blob_storage = blob_storage
        self._verifiable = verifiable_storage
        self._change_sets = change_set_helper
        self._primary_key = entity_connector.get_schema().primary_key.property
        self._lock = asyncio.Lock()

    async def _seal(self, changes: list[SyncChange], node_identity: str) -> str:
        change_set = SyncChangeSet(
            id=secrets.token_hex(32),
            date_created=_now(),
            changes=changes,
            node_identity=node_identity,
        )
        change_set.proof = await self._change_sets.create_change_set_proof(change_set)
        return await self._change_sets.store_change_set(change_set)

    async def create_and_store_change_set(
        self, changes: list[SyncChange], node_identity: str
    ) -> str | None:
        """Seal pending local changes into a signed change-set blob.

        "set" changes captured by id are replaced by the current entity;
        entities removed since capture are left out.

        Returns:
            The change-set storage id, None when nothing remained to send
        """
        sealed: list[SyncChange] = []
        for change in changes:
            if change.operation == SyncOperation.DELETE:
                sealed.append(SyncChange(operation=SyncOperation.DELETE, id=change.id))
                continue
            entity = change.entity
            if entity is None and change.id is not None:
                entity = await self._connector.get(change.id)
            if entity is None:
                continue
            entity = {k: v for k, v in entity.items() if k != NODE_IDENTITY}
            sealed.append(SyncChange(operation=SyncOperation.SET, id=change.id, entity=entity))

        if not sealed:
            return None
        change_set_storage_id = await self._seal(sealed, node_identity)
        logger.info(
            "Change-set created",
            extra={"change_set": change_set_storage_id, "changes": len(sealed)},
        )
        return change_set_storage_id

    async def add_change_set_to_sync_state(self, key: str, change_set_storage_id: str) -> str:
        """Append a change-set to the newest snapshot and advance the pointer.

        Returns:
            The storage id of the new sync state blob
        """
        async with self._lock:
            pointer = await self.get_verifiable_sync_pointer(key)
            state = None
            if pointer is not None:
                state = await self.get_remote_sync_state(pointer.sync_pointer_id)
            state = state or SyncState()

            now = _now()
            if state.snapshots:
                snapshot = max(state.snapshots, key=lambda s: s.date_created)
                snapshot.date_modified = now
            else:
                snapshot = SyncSnapshot(id=secrets.token_hex(32), date_created=now, date_modified=now)
                state.snapshots.append(snapshot)
            if change_set_storage_id not in snapshot.change_set_storage_ids:
                snapshot.change_set_storage_ids.append(change_set_storage_id)

            state_id = await self.store_remote_sync_state(state)
            await self.store_verifiable_sync_pointer(key, state_id)
        logger.info(
            "Change-set added to sync state",
            extra={
                "key": key,
                "change_set": change_set_storage_id,
                "snapshot_id": snapshot.id,
                "sync_state": state_id,
            },
        )
        return state_id

    async def consolidate_from_local(self, node_identity: str, key: str, batch_size: int) -> int:
        """Replace the sync state with one snapshot holding every local entity.

        Entities are read oldest first (by dateCreated) in pages of
        batch_size; each page becomes one signed change-set.

        Returns:
            Number of change-sets in the consolidated snapshot
        """
        async with self._lock:
            change_set_storage_ids: list[str] = []
            cursor = None
            total = 0
            while True:
                page = await self._connector.query(
                    sort_properties=[SortProperty("dateCreated", SortDirection.ASCENDING)],
                    cursor=cursor,
                    page_size=batch_size,
                )
                if page.entities:
                    changes = [
                        SyncChange(
                            operation=SyncOperation.SET,
                            id=entity.get(self._primary_key),
                            entity=entity,
                        )
                        for entity in page.entities
                    ]
                    change_set_storage_ids.append(await self._seal(changes, node_identity))
                    total += len(changes)
                cursor = page.cursor
                if not cursor:
                    break

            now = _now()
            state = SyncState(
                snapshots=[
                    SyncSnapshot(
                        id=secrets.token_hex(32),
                        date_created=now,
                        date_modified=now,
                        change_set_storage_ids=change_set_storage_ids,
                    )
                ]
            )
            state_id = await self.store_remote_sync_state(state)
            await self.store_verifiable_sync_pointer(key, state_id)
        logger.info(
            "Sync state consolidated",
            extra={
                "key": key,
                "entities": total,
                "change_sets": len(change_set_storage_ids),
                "sync_state": state_id,
            },
        )
        return len(change_set_storage_ids)

    async def get_verifiable_sync_pointer(self, key: str) -> VerifiableSyncPointer | None:
        try:
            item = await self._verifiable.get(key)
        except NotFoundError:
            logger.debug("Sync pointer not found", extra={"key": key})
            return None
        if not await self._verifiable.verify(key):
            logger.error("Sync pointer chain does not verify", extra={"key": key})
            return None
        return VerifiableSyncPointer.from_dict(item.data)

    async def store_verifiable_sync_pointer(self, key: str, sync_state_id: str) -> VerifiableItem:
        return await self._verifiable.create(key, VerifiableSyncPointer(sync_state_id).to_dict())

    async def get_remote_sync_state(self, sync_state_id: str) -> SyncState | None:
        data = await self._blob_storage.get(sync_state_id)
        if data is None:
            logger.warning("Sync state blob missing", extra={"sync_state": sync_state_id})
            return None
        document: dict[str, Any] = json.loads(data)
        return SyncState.from_dict(document)

    async def store_remote_sync_state(self, state: SyncState) -> str:
        return await self._blob_storage.set(
            json.dumps(state.to_dict(), separators=(",", ":")).encode("utf-8")
        )
