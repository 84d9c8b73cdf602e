"""
Trusted node push surface.

Followers cannot write the sync pointer; they store their signed change-set
in the shared blob storage and ask the trusted (authoritative) node to
adopt it. The trusted node verifies the proof, applies the changes to its
own store, appends the change-set to the sync state and advances the
pointer.

Callers are authenticated by the change-set proof alone; an optional
allow-list restricts which node identities may push.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ..blob import BlobStorage, parse_blob_id
from ..config import SyncConfig
from ..connectors.base import EntityStorageConnector
from ..errors import ConfigurationError, GuardError, NotFoundError, SignatureInvalidError
from ..identity import IdentityConnector
from ..verifiable import VerifiableStorage
from .change_set import ChangeSetHelper
from .remote_state import RemoteSyncStateHelper

logger = logging.getLogger(__name__)


class TrustedSynchronisedStorageService:
    """Accepts change-sets pushed by follower nodes.

    Args:
        entity_connector: The trusted node's entity store
        blob_storage: Shared blob storage
        verifiable_storage: Holds the sync pointer
        identity: Verifies change-set proofs
        config: Sync configuration (storage key and method id)
        allowed_identities: Node identities permitted to push, None for any
        remote_state: The node's shared remote state helper
    """

    source = "TrustedSynchronisedStorageService"

    def __init__(
        self,
        entity_connector: EntityStorageConnector,
        blob_storage: BlobStorage,
        verifiable_storage: VerifiableStorage,
        identity: IdentityConnector,
        config: SyncConfig,
        allowed_identities: Iterable[str] | None = None,
        remote_state: RemoteSyncStateHelper | None = None,
    ) -> None:
        if not config.verifiable_storage_key:
            raise ConfigurationError("Trusted sync requires a verifiable storage key")
        self._key = config.verifiable_storage_key
        self._change_sets = ChangeSetHelper(
            entity_connector, blob_storage, identity, config.decentralised_storage_method_id
        )
        self._remote = remote_state or RemoteSyncStateHelper(
            entity_connector, blob_storage, verifiable_storage, self._change_sets
        )
        self._allowed = frozenset(allowed_identities) if allowed_identities is not None else None

    async def sync_change_set(self, change_set_storage_id: str) -> None:
        """Verify, apply and publish a change-set pushed by a follower.

        Raises:
            GuardError: If the id is malformed or the pushing node is not allowed
            NotFoundError: If the change-set blob does not exist
            SignatureInvalidError: If the proof does not verify
        """
        if not isinstance(change_set_storage_id, str) or not change_set_storage_id:
            raise GuardError(self.source, "changeSetStorageId")
        parse_blob_id(change_set_storage_id)

        change_set = await self._change_sets.get_change_set(change_set_storage_id)
        if change_set is None:
            raise NotFoundError(self.source, change_set_storage_id)
        if self._allowed is not None and change_set.node_identity not in self._allowed:
            logger.warning(
                "Change-set from unknown node refused",
                extra={"change_set": change_set_storage_id, "node_identity": change_set.node_identity},
            )
            raise GuardError(
                self.source,
                "nodeIdentity",
                f"Node '{change_set.node_identity}' may not push change-sets",
            )
        if not await self._change_sets.verify_change_set_proof(change_set):
            logger.error(
                "Pushed change-set proof invalid",
                extra={"change_set": change_set_storage_id, "node_identity": change_set.node_identity},
            )
            raise SignatureInvalidError(change_set.id, change_set.node_identity)

        await self._change_sets.apply_change_set(change_set)
        await self._remote.add_change_set_to_sync_state(self._key, change_set_storage_id)
        logger.info(
            "Pushed change-set adopted",
            extra={
                "change_set": change_set_storage_id,
                "node_identity": change_set.node_identity,
                "changes": len(change_set.changes),
            },
        )
