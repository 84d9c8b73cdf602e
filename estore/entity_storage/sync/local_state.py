"""
Local synchronisation state.

The snapshot store holds one local snapshot per context (pending changes
captured on this node) and one entry per remote snapshot recording which
change-sets were already applied here.

Invariants:
    - Local snapshot mutation is serialised by an asyncio lock
    - A pending change is kept once per id; a later change to the same id
      replaces the earlier one
    - Changes captured while a push is in flight survive the reset that
      follows the push
    - Applied change-set ids only grow; progress is persisted after every
      change so an interrupted application resumes where it stopped

How to change safely:
    - Persist progress before any new suspension point is added to the
      apply loop
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timezone

from ..conditions.model import and_, equals
from ..connectors.base import EntityStorageConnector
from .change_set import ChangeSetHelper
from .models import SyncChange, SyncOperation, SyncSnapshot, SyncSnapshotEntry, SyncState

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class LocalSyncStateHelper:
    """Maintains local snapshot entries in the snapshot store.

    Args:
        snapshot_connector: Connector storing SyncSnapshotEntry entities
        change_set_helper: Used to fetch, verify and apply remote change-sets
        context: Sync storage key the entries belong to
    """

    def __init__(
        self,
        snapshot_connector: EntityStorageConnector,
        change_set_helper: ChangeSetHelper,
        context: str,
    ) -> None:
        self._connector = snapshot_connector
        self._change_sets = change_set_helper
        self._context = context
        self._lock = asyncio.Lock()
        self._recaptured: set[str] | None = None

    async def _load_local_snapshot(self) -> SyncSnapshotEntry:
        result = await self._connector.query(
            and_(equals("isLocalSnapshot", True), equals("context", self._context)),
            page_size=1,
        )
        if result.entities:
            return SyncSnapshotEntry.from_dict(result.entities[0])
        snapshot = SyncSnapshotEntry(
            id=secrets.token_hex(32),
            context=self._context,
            date_created=_now(),
            is_local_snapshot=True,
            local_changes=[],
        )
        await self._connector.set(snapshot.to_dict())
        logger.info(
            "Local snapshot created",
            extra={"snapshot_id": snapshot.id, "context": self._context},
        )
        return snapshot

    async def get_local_snapshot(self) -> SyncSnapshotEntry:
        """The local snapshot, created (and persisted) when missing."""
        async with self._lock:
            return await self._load_local_snapshot()

    async def set_local_snapshot(self, snapshot: SyncSnapshotEntry) -> None:
        async with self._lock:
            await self._connector.set(snapshot.to_dict())

    async def add_local_change(self, operation: SyncOperation, id: str) -> None:
        """Record a pending change for an entity id."""
        async with self._lock:
            snapshot = await self._load_local_snapshot()
            changes = [c for c in snapshot.local_changes or [] if c.id != id]
            changes.append(SyncChange(operation=operation, id=id))
            snapshot.local_changes = changes
            snapshot.date_modified = _now()
            await self._connector.set(snapshot.to_dict())
            if self._recaptured is not None:
                self._recaptured.add(id)

    async def begin_push(self) -> list[SyncChange]:
        """Take a copy of the pending changes and start tracking re-captures."""
        async with self._lock:
            snapshot = await self._load_local_snapshot()
            self._recaptured = set()
            return list(snapshot.local_changes or [])

    def abort_push(self) -> None:
        self._recaptured = None

    async def reset_local_changes(self, pushed_changes: list[SyncChange]) -> None:
        """Drop pushed changes, keeping ids captured again since begin_push()."""
        async with self._lock:
            recaptured = self._recaptured or set()
            self._recaptured = None
            pushed_ids = {c.id for c in pushed_changes}
            snapshot = await self._load_local_snapshot()
            remaining = [
                c
                for c in snapshot.local_changes or []
                if c.id not in pushed_ids or c.id in recaptured
            ]
            snapshot.local_changes = remaining
            snapshot.date_modified = _now()
            await self._connector.set(snapshot.to_dict())
            logger.debug(
                "Local changes reset",
                extra={"pushed": len(pushed_changes), "remaining": len(remaining)},
            )

    async def sync_from_remote(
        self,
        state: SyncState,
        node_identity: str | None,
        should_continue: Callable[[], bool] | None = None,
    ) -> bool:
        """Apply the change-sets of a remote sync state not yet applied here.

        Snapshots are scanned newest first until one is found unchanged
        since the last sync; the new and modified ones are then applied
        oldest first.

        Args:
            state: The remote sync state
            node_identity: This node's identity; its own change-sets are skipped
            should_continue: Polled before each change-set; False stops early

        Returns:
            True when every change-set was processed, False when stopped early
            or a change-set blob could not be fetched
        """
        pending: list[tuple[SyncSnapshot, SyncSnapshotEntry | None]] = []
        for remote in sorted(state.snapshots, key=lambda s: s.date_created, reverse=True):
            stored = await self._connector.get(remote.id)
            local = SyncSnapshotEntry.from_dict(stored) if stored is not None else None
            if (
                local is not None
                and local.date_modified is not None
                and local.date_modified == remote.date_modified
                and local.applying_change_set_storage_id is None
            ):
                break
            pending.append((remote, local))

        for remote, local in reversed(pending):
            if not await self._sync_snapshot(remote, local, node_identity, should_continue):
                return False
        return True

    async def _sync_snapshot(
        self,
        remote: SyncSnapshot,
        local: SyncSnapshotEntry | None,
        node_identity: str | None,
        should_continue: Callable[[], bool] | None,
    ) -> bool:
        entry = local or SyncSnapshotEntry(
            id=remote.id,
            context=self._context,
            date_created=remote.date_created,
            is_local_snapshot=False,
            change_set_storage_ids=[],
        )
        applied = list(entry.change_set_storage_ids or [])

        for change_set_storage_id in remote.change_set_storage_ids:
            if change_set_storage_id in applied:
                continue
            if should_continue is not None and not should_continue():
                return False

            change_set = await self._change_sets.get_change_set(change_set_storage_id)
            if change_set is None:
                return False

            if change_set.node_identity == node_identity:
                logger.debug("Own change-set skipped", extra={"change_set_id": change_set.id})
            elif not await self._change_sets.verify_change_set_proof(change_set):
                logger.error(
                    "Change-set rejected, proof invalid",
                    extra={
                        "change_set": change_set_storage_id,
                        "node_identity": change_set.node_identity,
                    },
                )
            else:
                start_index = 0
                if entry.applying_change_set_storage_id == change_set_storage_id:
                    start_index = (entry.applied_change_index or 0) + 1

                async def progress(index: int, storage_id: str = change_set_storage_id) -> None:
                    entry.applying_change_set_storage_id = storage_id
                    entry.applied_change_index = index
                    await self._connector.set(entry.to_dict())

                await self._change_sets.apply_change_set(change_set, start_index, progress)

            applied.append(change_set_storage_id)
            entry.change_set_storage_ids = applied
            entry.applying_change_set_storage_id = None
            entry.applied_change_index = None
            await self._connector.set(entry.to_dict())

        entry.date_modified = remote.date_modified
        await self._connector.set(entry.to_dict())
        logger.info(
            "Snapshot synchronised",
            extra={"snapshot_id": remote.id, "change_sets": len(applied)},
        )
        return True
