"""
Synchronised storage service.

Runs the two periodic loops of a node:
- entity sync: pull the remote sync state and apply new change-sets, then
  seal pending local changes into a signed change-set and push it (to the
  sync state on the authoritative node, to the trusted node otherwise)
- consolidation (authoritative node only): replace the sync state with a
  single snapshot of the whole entity store

Each loop is an asyncio task. An iteration runs under a deadline; push and
pull I/O is retried with bounded exponential backoff. stop() lets the
change-set being applied finish (progress is persisted after every change)
before the tasks are cancelled.

Invariants:
    - Local changes are only dropped after the push succeeded
    - A failed iteration is logged and retried on the next interval
    - The schema declares nodeIdentity and dateCreated, each either
      secondary or sortable

How to change safely:
    - Keep every backend call of an iteration inside _with_retry or the
      iteration deadline, never unbounded
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar

from ..blob import BlobStorage
from ..config import SyncConfig
from ..connectors.base import EntityStorageConnector, connector_factory, primary_key_of
from ..errors import ConfigurationError, EntityStorageError
from ..identity import IdentityConnector
from ..verifiable import VerifiableStorage
from .change_set import NODE_IDENTITY, ChangeSetHelper
from .local_state import LocalSyncStateHelper
from .models import SYNCHRONISED_ENTITY_REQUIRED_PROPERTIES, SyncOperation
from .remote_state import RemoteSyncStateHelper

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRY_DELAY_SECONDS = 30.0


class TrustedSyncComponent(Protocol):
    """What a follower needs from the trusted node."""

    async def sync_change_set(self, change_set_storage_id: str) -> None: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_retryable(err: BaseException) -> bool:
    if isinstance(err, EntityStorageError):
        return err.retryable
    return isinstance(err, (asyncio.TimeoutError, OSError))


class SynchronisedStorageService:
    """Captures local changes and keeps the node in sync with the others.

    Args:
        entity_connector: The underlying entity store
        snapshot_connector: Store for SyncSnapshotEntry entities
        blob_storage: Shared blob storage
        verifiable_storage: Holds the sync pointer
        identity: Signs and verifies change-sets
        config: Sync configuration
        trusted_component: Trusted node used by followers to push
        trusted_component_name: Name of the trusted component in the
            connector factory, resolved on first push
        remote_state: Shared remote state helper (one per node)

    Raises:
        ConfigurationError: If the schema lacks the required properties, the
            storage key is missing, or a follower has no trusted component
    """

    def __init__(
        self,
        entity_connector: EntityStorageConnector,
        snapshot_connector: EntityStorageConnector,
        blob_storage: BlobStorage,
        verifiable_storage: VerifiableStorage,
        identity: IdentityConnector,
        config: SyncConfig,
        trusted_component: TrustedSyncComponent | None = None,
        trusted_component_name: str | None = None,
        remote_state: RemoteSyncStateHelper | None = None,
    ) -> None:
        self._schema = entity_connector.get_schema()
        for required in SYNCHRONISED_ENTITY_REQUIRED_PROPERTIES:
            prop = self._schema.get_property(required)
            if prop is None or prop.property != required:
                raise ConfigurationError(
                    f"Synchronised schema '{self._schema.name}' is missing '{required}'",
                    details={"schema": self._schema.name, "requiredProperty": required},
                )
            if not prop.is_secondary and prop.sort_direction is None:
                raise ConfigurationError(
                    f"Synchronised property '{required}' must be secondary or sortable",
                    details={"schema": self._schema.name, "requiredProperty": required},
                )
        if not config.verifiable_storage_key:
            raise ConfigurationError("Sync requires a verifiable storage key")
        if not config.is_authoritative_node and not (
            trusted_component is not None or trusted_component_name
        ):
            raise ConfigurationError("A follower node requires a trusted sync component")

        self._config = config
        self._key = config.verifiable_storage_key
        self._trusted = trusted_component
        self._trusted_name = trusted_component_name

        change_sets = ChangeSetHelper(
            entity_connector,
            blob_storage,
            identity,
            config.decentralised_storage_method_id,
        )
        self._local = LocalSyncStateHelper(snapshot_connector, change_sets, self._key)
        self._remote = remote_state or RemoteSyncStateHelper(
            entity_connector, blob_storage, verifiable_storage, change_sets
        )

        self._node_identity: str | None = None
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._pulls = 0
        self._pushes = 0
        self._consolidations = 0
        self._failures = 0
        self._last_error: str | None = None

    @property
    def node_identity(self) -> str | None:
        return self._node_identity

    @property
    def remote_state(self) -> RemoteSyncStateHelper:
        return self._remote

    @property
    def local_state(self) -> LocalSyncStateHelper:
        return self._local

    async def start(self, node_identity: str) -> None:
        """Start the periodic loops for a node identity."""
        if self._tasks:
            logger.warning("Sync service already running")
            return
        self._node_identity = node_identity
        self._stopping = asyncio.Event()
        await self._local.get_local_snapshot()

        if self._config.entity_update_interval_ms > 0:
            self._tasks.append(
                asyncio.create_task(
                    self._loop(
                        "entitySync",
                        self.run_entity_sync_cycle,
                        self._config.entity_update_interval_ms,
                    )
                )
            )
        if self._config.is_authoritative_node and self._config.consolidation_interval_ms > 0:
            self._tasks.append(
                asyncio.create_task(
                    self._loop(
                        "consolidation",
                        self.run_consolidation_cycle,
                        self._config.consolidation_interval_ms,
                        initial_delay=True,
                    )
                )
            )
        logger.info(
            "Sync service started",
            extra={
                "node_identity": node_identity,
                "authoritative": self._config.is_authoritative_node,
                "key": self._key,
            },
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop the loops, letting an in-progress change-set finish first."""
        self._stopping.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(
            self._tasks, timeout=timeout if timeout is not None else self._config.io_timeout_seconds
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Sync service stopped", extra={"node_identity": self._node_identity})

    def _should_continue(self) -> bool:
        return not self._stopping.is_set()

    async def _loop(
        self,
        name: str,
        cycle: Callable[[], Awaitable[Any]],
        interval_ms: int,
        initial_delay: bool = False,
    ) -> None:
        if initial_delay and await self._wait_interval(interval_ms):
            return
        while not self._stopping.is_set():
            deadline = max(interval_ms / 1000, self._config.io_timeout_seconds)
            try:
                await asyncio.wait_for(cycle(), timeout=deadline)
            except asyncio.TimeoutError:
                self._record_failure(f"{name} iteration exceeded {deadline}s")
                logger.error(f"{name} iteration timed out", extra={"deadline_seconds": deadline})
            except Exception as e:
                self._record_failure(str(e))
                logger.error(f"{name} failed: {e}", exc_info=True)
            if await self._wait_interval(interval_ms):
                return

    async def _wait_interval(self, interval_ms: int) -> bool:
        """Sleep for an interval; True when stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=interval_ms / 1000)
            return True
        except asyncio.TimeoutError:
            return False

    def _record_failure(self, message: str) -> None:
        self._failures += 1
        self._last_error = message

    async def _with_retry(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(fn(), timeout=self._config.io_timeout_seconds)
            except Exception as e:
                if not _is_retryable(e) or attempt >= self._config.max_retries:
                    raise
                delay = min(
                    self._config.retry_base_delay_ms * (2**attempt) / 1000,
                    MAX_RETRY_DELAY_SECONDS,
                )
                attempt += 1
                logger.warning(
                    "Sync I/O failed, retrying",
                    extra={"operation": operation, "attempt": attempt, "delay_seconds": delay},
                )
                await asyncio.sleep(delay)

    def prepare(self, entity: dict[str, Any]) -> dict[str, Any]:
        """Stamp the sync properties on an entity about to be stored.

        nodeIdentity and dateCreated are set when absent; dateModified is
        always refreshed since it decides conflicts between nodes.
        """
        if not entity.get(NODE_IDENTITY):
            entity[NODE_IDENTITY] = self._node_identity or ""
        now = _now()
        if not entity.get("dateCreated"):
            entity["dateCreated"] = now
        entity["dateModified"] = now
        return entity

    async def sync_entity_set(self, entity: dict[str, Any]) -> None:
        id = primary_key_of(self._schema, entity)
        await self._local.add_local_change(SyncOperation.SET, str(id))

    async def sync_entity_remove(self, id: Any) -> None:
        await self._local.add_local_change(SyncOperation.DELETE, str(id))

    async def run_entity_sync_cycle(self) -> None:
        """One pull-then-push iteration."""
        await self.pull()
        await self.push()

    async def pull(self) -> bool:
        """Apply new remote change-sets.

        Returns:
            True when the remote state was fully applied (or absent)
        """
        pointer = await self._with_retry(
            "getSyncPointer", lambda: self._remote.get_verifiable_sync_pointer(self._key)
        )
        if pointer is None:
            return True
        state = await self._with_retry(
            "getSyncState", lambda: self._remote.get_remote_sync_state(pointer.sync_pointer_id)
        )
        if state is None:
            return False
        complete = await self._local.sync_from_remote(
            state, self._node_identity, self._should_continue
        )
        self._pulls += 1
        return complete

    async def push(self) -> str | None:
        """Seal and send pending local changes.

        Returns:
            The change-set storage id, None when nothing was pending
        """
        if not self._node_identity:
            return None
        changes = await self._local.begin_push()
        if not changes:
            self._local.abort_push()
            return None
        node_identity = self._node_identity
        try:
            change_set_storage_id = await self._with_retry(
                "storeChangeSet",
                lambda: self._remote.create_and_store_change_set(changes, node_identity),
            )
            if change_set_storage_id is not None:
                if self._config.is_authoritative_node:
                    await self._with_retry(
                        "addChangeSet",
                        lambda: self._remote.add_change_set_to_sync_state(
                            self._key, change_set_storage_id
                        ),
                    )
                else:
                    trusted = self._trusted_component()
                    await self._with_retry(
                        "pushChangeSet", lambda: trusted.sync_change_set(change_set_storage_id)
                    )
        except BaseException:
            self._local.abort_push()
            raise
        await self._local.reset_local_changes(changes)
        self._pushes += 1
        logger.info(
            "Local changes pushed",
            extra={"change_set": change_set_storage_id, "changes": len(changes)},
        )
        return change_set_storage_id

    def _trusted_component(self) -> TrustedSyncComponent:
        if self._trusted is None:
            self._trusted = connector_factory.get_component(self._trusted_name)
        return self._trusted

    async def run_consolidation_cycle(self) -> int:
        """Consolidate the whole store into a fresh sync state.

        Pending local changes are covered by the consolidated snapshot and
        are dropped once it is in force.

        Returns:
            Number of change-sets in the consolidated snapshot (0 on a
            follower, which never consolidates)
        """
        if not self._config.is_authoritative_node or not self._node_identity:
            return 0
        changes = await self._local.begin_push()
        started = time.monotonic()
        try:
            count = await self._remote.consolidate_from_local(
                self._node_identity, self._key, self._config.consolidation_batch_size
            )
        except BaseException:
            self._local.abort_push()
            raise
        await self._local.reset_local_changes(changes)
        self._consolidations += 1
        logger.info(
            "Consolidation completed",
            extra={"change_sets": count, "duration_ms": int((time.monotonic() - started) * 1000)},
        )
        return count

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": bool(self._tasks) and not self._stopping.is_set(),
            "node_identity": self._node_identity,
            "authoritative": self._config.is_authoritative_node,
            "pulls": self._pulls,
            "pushes": self._pushes,
            "consolidations": self._consolidations,
            "failures": self._failures,
            "last_error": self._last_error,
        }
