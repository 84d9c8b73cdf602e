"""
Synchronisation wire models.

Every model has a camelCase JSON form (to_dict/from_dict) because change-sets,
sync states and pointers are exchanged between nodes as blobs.

Layout:
    VerifiableSyncPointer  -> verifiable storage, {syncPointerId}
    SyncState              -> blob, {snapshots: [SyncSnapshot]}
    SyncSnapshot           -> {id, dateCreated, dateModified?, changeSetStorageIds}
    SyncChangeSet          -> gzip JSON blob, signed by nodeIdentity
    SyncSnapshotEntry      -> local entity store, one per applied snapshot plus
                              the single local snapshot of pending changes

Invariants:
    - A "delete" change carries an id, a "set" change carries an entity
      (local snapshots hold "set" changes by id until sealed)
    - A sealed change-set is never modified
    - The signed form of a change-set is its to_dict() without "proof"

How to change safely:
    - Only add optional fields; older nodes must still read the blobs
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import GuardError
from ..schema import EntitySchema, prop, register_schema

SYNCHRONISED_ENTITY_REQUIRED_PROPERTIES = ("nodeIdentity", "dateCreated")


class SyncOperation(Enum):
    SET = "set"
    DELETE = "delete"

    @classmethod
    def from_str(cls, value: str) -> SyncOperation:
        for operation in cls:
            if operation.value == value:
                return operation
        raise GuardError("SyncChange", "operation", f"Invalid sync operation '{value}'")


@dataclass
class SyncChange:
    """A single captured or sealed change."""

    operation: SyncOperation
    id: str | None = None
    entity: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"operation": self.operation.value}
        if self.id is not None:
            result["id"] = self.id
        if self.entity is not None:
            result["entity"] = self.entity
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncChange:
        return cls(
            operation=SyncOperation.from_str(data.get("operation", "")),
            id=data.get("id"),
            entity=data.get("entity"),
        )


@dataclass
class SyncChangeSet:
    """An ordered batch of changes produced and signed by one node.

    Attributes:
        id: Random identifier of the change-set
        date_created: ISO timestamp of sealing
        changes: Ordered changes
        node_identity: Identity of the producing node
        date_modified: Optional ISO timestamp
        proof: DataIntegrityProof over the unsigned form
    """

    id: str
    date_created: str
    changes: list[SyncChange]
    node_identity: str
    date_modified: str | None = None
    proof: dict[str, Any] | None = None

    def unsigned_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "dateCreated": self.date_created,
            "changes": [c.to_dict() for c in self.changes],
            "nodeIdentity": self.node_identity,
        }
        if self.date_modified is not None:
            result["dateModified"] = self.date_modified
        return result

    def to_dict(self) -> dict[str, Any]:
        result = self.unsigned_dict()
        if self.proof is not None:
            result["proof"] = self.proof
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncChangeSet:
        if not isinstance(data, dict) or not data.get("id"):
            raise GuardError("SyncChangeSet", "id")
        return cls(
            id=data["id"],
            date_created=data.get("dateCreated", ""),
            changes=[SyncChange.from_dict(c) for c in data.get("changes") or []],
            node_identity=data.get("nodeIdentity", ""),
            date_modified=data.get("dateModified"),
            proof=data.get("proof"),
        )


@dataclass
class SyncSnapshot:
    """A checkpoint referencing change-set blobs in application order."""

    id: str
    date_created: str
    change_set_storage_ids: list[str] = field(default_factory=list)
    date_modified: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "dateCreated": self.date_created,
            "changeSetStorageIds": list(self.change_set_storage_ids),
        }
        if self.date_modified is not None:
            result["dateModified"] = self.date_modified
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSnapshot:
        return cls(
            id=data["id"],
            date_created=data.get("dateCreated", ""),
            change_set_storage_ids=list(data.get("changeSetStorageIds") or []),
            date_modified=data.get("dateModified"),
        )


@dataclass
class SyncState:
    """The globally visible list of snapshots."""

    snapshots: list[SyncSnapshot] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"snapshots": [s.to_dict() for s in self.snapshots]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncState:
        return cls(snapshots=[SyncSnapshot.from_dict(s) for s in data.get("snapshots") or []])


@dataclass
class VerifiableSyncPointer:
    """Verifiable record naming the blob that holds the current sync state."""

    sync_pointer_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"syncPointerId": self.sync_pointer_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerifiableSyncPointer:
        if not isinstance(data, dict) or not data.get("syncPointerId"):
            raise GuardError("VerifiableSyncPointer", "syncPointerId")
        return cls(sync_pointer_id=data["syncPointerId"])


@dataclass
class SyncSnapshotEntry:
    """Local record of a snapshot.

    The local snapshot (is_local_snapshot=True) accumulates pending changes.
    Every other entry mirrors a remote snapshot and remembers which of its
    change-sets were applied, plus the position inside a change-set whose
    application was interrupted.

    Attributes:
        id: Snapshot id
        context: Storage key the snapshot belongs to
        date_created: ISO timestamp
        date_modified: ISO timestamp of the last change
        is_local_snapshot: Whether this entry holds pending local changes
        change_set_storage_ids: Applied change-set blob ids
        local_changes: Pending local changes
        applying_change_set_storage_id: Change-set being applied
        applied_change_index: Last applied change index in that change-set
    """

    id: str
    context: str
    date_created: str
    date_modified: str | None = None
    is_local_snapshot: bool | None = None
    change_set_storage_ids: list[str] | None = None
    local_changes: list[SyncChange] | None = None
    applying_change_set_storage_id: str | None = None
    applied_change_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "context": self.context,
            "dateCreated": self.date_created,
        }
        if self.date_modified is not None:
            result["dateModified"] = self.date_modified
        if self.is_local_snapshot is not None:
            result["isLocalSnapshot"] = self.is_local_snapshot
        if self.change_set_storage_ids is not None:
            result["changeSetStorageIds"] = list(self.change_set_storage_ids)
        if self.local_changes is not None:
            result["localChanges"] = [c.to_dict() for c in self.local_changes]
        if self.applying_change_set_storage_id is not None:
            result["applyingChangeSetStorageId"] = self.applying_change_set_storage_id
        if self.applied_change_index is not None:
            result["appliedChangeIndex"] = self.applied_change_index
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncSnapshotEntry:
        local_changes = data.get("localChanges")
        return cls(
            id=data["id"],
            context=data.get("context", ""),
            date_created=data.get("dateCreated", ""),
            date_modified=data.get("dateModified"),
            is_local_snapshot=data.get("isLocalSnapshot"),
            change_set_storage_ids=data.get("changeSetStorageIds"),
            local_changes=(
                [SyncChange.from_dict(c) for c in local_changes]
                if local_changes is not None
                else None
            ),
            applying_change_set_storage_id=data.get("applyingChangeSetStorageId"),
            applied_change_index=data.get("appliedChangeIndex"),
        )


SYNC_SNAPSHOT_ENTRY_SCHEMA = register_schema(
    EntitySchema(
        name="SyncSnapshotEntry",
        properties=(
            prop("id", "string", is_primary=True),
            prop("context", "string", is_secondary=True),
            prop("dateCreated", "string", format="date-time"),
            prop("dateModified", "string", format="date-time", optional=True),
            prop("isLocalSnapshot", "boolean", optional=True),
            prop("changeSetStorageIds", "array", item_type="string", optional=True),
            prop("localChanges", "array", item_type="object", optional=True),
            prop("applyingChangeSetStorageId", "string", optional=True),
            prop("appliedChangeIndex", "integer", optional=True),
        ),
    )
)
