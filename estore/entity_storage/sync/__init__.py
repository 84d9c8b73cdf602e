"""
Decentralised synchronisation engine.

Nodes converge on the same entity collection through signed change-sets
stored as blobs, a sync state blob listing them per snapshot, and a pointer
to the current state kept in verifiable storage. See service.py for the
node loops and trusted.py for the push surface of the authoritative node.
"""

from .change_set import ChangeSetHelper
from .connector import SynchronisedEntityStorageConnector
from .local_state import LocalSyncStateHelper
from .models import (
    SYNC_SNAPSHOT_ENTRY_SCHEMA,
    SYNCHRONISED_ENTITY_REQUIRED_PROPERTIES,
    SyncChange,
    SyncChangeSet,
    SyncOperation,
    SyncSnapshot,
    SyncSnapshotEntry,
    SyncState,
    VerifiableSyncPointer,
)
from .remote import HttpTrustedSyncClient
from .remote_state import RemoteSyncStateHelper
from .service import SynchronisedStorageService, TrustedSyncComponent
from .trusted import TrustedSynchronisedStorageService

__all__ = [
    # Models
    "SYNC_SNAPSHOT_ENTRY_SCHEMA",
    "SYNCHRONISED_ENTITY_REQUIRED_PROPERTIES",
    "SyncChange",
    "SyncChangeSet",
    "SyncOperation",
    "SyncSnapshot",
    "SyncSnapshotEntry",
    "SyncState",
    "VerifiableSyncPointer",
    # Helpers
    "ChangeSetHelper",
    "LocalSyncStateHelper",
    "RemoteSyncStateHelper",
    # Services
    "HttpTrustedSyncClient",
    "SynchronisedEntityStorageConnector",
    "SynchronisedStorageService",
    "TrustedSyncComponent",
    "TrustedSynchronisedStorageService",
]
