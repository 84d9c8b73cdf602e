"""
Integration tests for the synchronisation engine.

Three in-process nodes share one blob storage, one verifiable storage and
one identity connector: follower A, authoritative (trusted) node B and
follower C.

Tests cover:
- Capturing local writes and sealing them into signed change-sets
- Pushing through the trusted node and pulling on other nodes
- Proof verification, allow-lists and forged change-sets
- Resuming an interrupted change-set and skipping own change-sets
- Last-writer-wins on dateModified
- Consolidation of the sync state
- The periodic loops and their failure handling
"""

import asyncio
from dataclasses import dataclass, field

import pytest

from estore.entity_storage.blob import MemoryBlobStorage
from estore.entity_storage.config import SyncConfig
from estore.entity_storage.connectors import MemoryEntityStorageConnector, connector_factory
from estore.entity_storage.conditions import equals
from estore.entity_storage.errors import (
    BackendUnavailableError,
    ConfigurationError,
    GuardError,
    NotFoundError,
    SignatureInvalidError,
)
from estore.entity_storage.identity import Ed25519IdentityConnector
from estore.entity_storage.schema import EntitySchema, prop
from estore.entity_storage.sync import (
    SYNC_SNAPSHOT_ENTRY_SCHEMA,
    ChangeSetHelper,
    SyncChange,
    SyncChangeSet,
    SynchronisedEntityStorageConnector,
    SynchronisedStorageService,
    SyncOperation,
    SyncSnapshotEntry,
    TrustedSynchronisedStorageService,
)
from estore.entity_storage.verifiable import MemoryVerifiableStorage

KEY = "sync-pointer"
METHOD = "decentralised-storage-assertion"
NODE_A = "did:entity-storage:node-a"
NODE_B = "did:entity-storage:node-b"
NODE_C = "did:entity-storage:node-c"

SCHEMA = EntitySchema(
    name="SyncItem",
    properties=(
        prop("id", "string", is_primary=True),
        prop("value1", "string", optional=True),
        prop("value2", "integer", optional=True),
        prop("nodeIdentity", "string", is_secondary=True, optional=True),
        prop("dateCreated", "string", format="date-time", sort_direction="asc", optional=True),
        prop("dateModified", "string", format="date-time", optional=True),
    ),
)


@dataclass
class Network:
    """Storage shared by every node."""

    blobs: MemoryBlobStorage = field(default_factory=MemoryBlobStorage)
    verifiable: MemoryVerifiableStorage = field(default_factory=MemoryVerifiableStorage)
    identity: Ed25519IdentityConnector = field(default_factory=Ed25519IdentityConnector)


class SyncNode:
    """One node: backend store, snapshot store, sync service and wrapper."""

    def __init__(self, network, identity, authoritative=False, trusted=None, **overrides):
        values = {
            "enabled": True,
            "verifiable_storage_key": KEY,
            "is_authoritative_node": authoritative,
            "entity_update_interval_ms": 0,
            "consolidation_interval_ms": 0,
            "consolidation_batch_size": 2,
            "io_timeout_seconds": 5.0,
            "max_retries": 1,
            "retry_base_delay_ms": 1,
        }
        values.update(overrides)
        self.identity = identity
        self.network = network
        self.config = SyncConfig(**values)
        network.identity.create_key(identity, METHOD)

        self.backend = MemoryEntityStorageConnector(SCHEMA)
        self.snapshots = MemoryEntityStorageConnector(SYNC_SNAPSHOT_ENTRY_SCHEMA)
        self.sync = SynchronisedStorageService(
            self.backend,
            self.snapshots,
            network.blobs,
            network.verifiable,
            network.identity,
            self.config,
            trusted_component=trusted,
        )
        self.connector = SynchronisedEntityStorageConnector(self.backend, self.sync)
        self.trusted = None
        if authoritative:
            self.trusted = TrustedSynchronisedStorageService(
                self.backend,
                network.blobs,
                network.verifiable,
                network.identity,
                self.config,
                remote_state=self.sync.remote_state,
            )

    async def start(self):
        await self.sync.start(self.identity)
        return self

    async def local_changes(self):
        snapshot = await self.sync.local_state.get_local_snapshot()
        return [(c.operation.value, c.id) for c in snapshot.local_changes or []]

    async def ids(self):
        result = await self.backend.query(page_size=1000)
        return sorted(e["id"] for e in result.entities)


async def current_state(node):
    pointer = await node.sync.remote_state.get_verifiable_sync_pointer(KEY)
    return await node.sync.remote_state.get_remote_sync_state(pointer.sync_pointer_id)


@pytest.fixture
def network():
    return Network()


@pytest.fixture
async def nodes(network):
    b = await SyncNode(network, NODE_B, authoritative=True).start()
    a = await SyncNode(network, NODE_A, trusted=b.trusted).start()
    c = await SyncNode(network, NODE_C, trusted=b.trusted).start()
    yield a, b, c
    for node in (a, b, c):
        await node.sync.stop()


class TestCapture:
    """Tests for capturing writes through the synchronised connector."""

    @pytest.mark.asyncio
    async def test_set_stamps_sync_properties(self, nodes):
        a, _, _ = nodes

        await a.connector.set({"id": "1", "value1": "aaa"})

        stored = await a.backend.get("1")
        assert stored["nodeIdentity"] == NODE_A
        assert stored["dateCreated"]
        assert stored["dateModified"] >= stored["dateCreated"]
        assert await a.local_changes() == [("set", "1")]

    @pytest.mark.asyncio
    async def test_date_created_preserved(self, nodes):
        a, _, _ = nodes

        await a.connector.set({"id": "1", "value1": "aaa", "dateCreated": "2026-01-01T00:00:00+00:00"})

        assert (await a.backend.get("1"))["dateCreated"] == "2026-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_later_change_replaces_earlier(self, nodes):
        a, _, _ = nodes

        await a.connector.set({"id": "1", "value1": "aaa"})
        await a.connector.set({"id": "2", "value1": "bbb"})
        await a.connector.remove("1")

        assert await a.local_changes() == [("set", "2"), ("delete", "1")]

    @pytest.mark.asyncio
    async def test_guarded_set_not_applied_is_not_captured(self, nodes):
        a, _, _ = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        await a.sync.push()

        await a.connector.set({"id": "1", "value1": "zzz"}, conditions=[equals("value1", "bbb")])

        assert await a.local_changes() == []
        assert (await a.backend.get("1"))["value1"] == "aaa"

    @pytest.mark.asyncio
    async def test_guarded_remove_not_applied_is_not_captured(self, nodes):
        a, _, _ = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        await a.sync.push()

        await a.connector.remove("1", conditions=[equals("value1", "bbb")])

        assert await a.local_changes() == []

    @pytest.mark.asyncio
    async def test_reads_pass_through(self, nodes):
        a, _, _ = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})

        assert (await a.connector.get("1"))["value1"] == "aaa"
        assert len((await a.connector.query()).entities) == 1
        assert a.connector.get_schema() is SCHEMA


class TestPushAndPull:
    """Tests for propagating changes between nodes."""

    @pytest.mark.asyncio
    async def test_follower_change_reaches_every_node(self, nodes):
        a, b, c = nodes
        await a.connector.set({"id": "1", "value1": "aaa", "value2": 35})

        change_set_storage_id = await a.sync.push()

        assert change_set_storage_id is not None
        assert await a.local_changes() == []
        assert await c.sync.pull() is True
        expected = await a.backend.get("1")
        assert await b.backend.get("1") == expected
        assert await c.backend.get("1") == expected

    @pytest.mark.asyncio
    async def test_sealed_change_set_omits_node_identity(self, nodes, network):
        a, _, c = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        change_set_storage_id = await a.sync.push()

        helper = ChangeSetHelper(a.backend, network.blobs, network.identity, METHOD)
        change_set = await helper.get_change_set(change_set_storage_id)

        assert change_set.node_identity == NODE_A
        assert "nodeIdentity" not in change_set.changes[0].entity
        assert await helper.verify_change_set_proof(change_set) is True
        await c.sync.pull()
        assert (await c.backend.get("1"))["nodeIdentity"] == NODE_A

    @pytest.mark.asyncio
    async def test_authoritative_push_advances_pointer(self, nodes):
        a, b, _ = nodes
        await b.connector.set({"id": "1", "value1": "from-b"})

        await b.sync.push()

        state = await current_state(b)
        assert len(state.snapshots) == 1
        assert len(state.snapshots[0].change_set_storage_ids) == 1
        await a.sync.pull()
        assert (await a.backend.get("1"))["value1"] == "from-b"

    @pytest.mark.asyncio
    async def test_delete_propagates(self, nodes):
        a, b, c = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        await a.sync.push()
        await c.sync.pull()

        await a.connector.remove("1")
        await a.sync.push()
        await c.sync.pull()

        assert await b.backend.get("1") is None
        assert await c.backend.get("1") is None

    @pytest.mark.asyncio
    async def test_push_without_changes(self, nodes):
        a, _, _ = nodes

        assert await a.sync.push() is None

    @pytest.mark.asyncio
    async def test_entity_removed_before_sealing(self, nodes):
        a, b, _ = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        await a.backend.remove("1")

        assert await a.sync.push() is None
        assert await a.local_changes() == []
        assert await b.sync.remote_state.get_verifiable_sync_pointer(KEY) is None

    @pytest.mark.asyncio
    async def test_pull_without_pointer(self, nodes):
        _, _, c = nodes

        assert await c.sync.pull() is True

    @pytest.mark.asyncio
    async def test_pull_is_idempotent(self, nodes):
        a, _, c = nodes
        for i in range(3):
            await a.connector.set({"id": str(i), "value1": "v"})
        await a.sync.push()

        await c.sync.pull()
        first = (await c.backend.query(page_size=100)).entities
        await c.sync.pull()
        second = (await c.backend.query(page_size=100)).entities

        assert first == second
        assert len(second) == 3

    @pytest.mark.asyncio
    async def test_reapplying_change_set_leaves_store_unchanged(self, nodes, network):
        a, _, c = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        change_set_storage_id = await a.sync.push()
        await c.sync.pull()
        before = await c.backend.get("1")

        helper = ChangeSetHelper(c.backend, network.blobs, network.identity, METHOD)
        await helper.get_and_apply_change_set(change_set_storage_id)

        assert await c.backend.get("1") == before

    @pytest.mark.asyncio
    async def test_own_change_sets_skipped(self, nodes):
        a, _, _ = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        await a.sync.push()
        await a.backend.set({**(await a.backend.get("1")), "value1": "local-only"})

        assert await a.sync.pull() is True

        assert (await a.backend.get("1"))["value1"] == "local-only"

    @pytest.mark.asyncio
    async def test_missing_change_set_blob_stops_pull(self, nodes, network):
        a, _, c = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        change_set_storage_id = await a.sync.push()
        await network.blobs.remove(change_set_storage_id)

        assert await c.sync.pull() is False
        assert await c.backend.get("1") is None


class TestPushFailures:
    """Tests for pushes that fail or race with new local writes."""

    @pytest.mark.asyncio
    async def test_changes_kept_when_push_fails(self, network):
        class Refusing:
            async def sync_change_set(self, change_set_storage_id):
                raise GuardError("Trusted", "changeSetStorageId", "refused")

        a = await SyncNode(network, NODE_A, trusted=Refusing()).start()
        await a.connector.set({"id": "1", "value1": "aaa"})

        with pytest.raises(GuardError):
            await a.sync.push()

        assert await a.local_changes() == [("set", "1")]

    @pytest.mark.asyncio
    async def test_retryable_failure_retried(self, network):
        b = await SyncNode(network, NODE_B, authoritative=True).start()

        class Flaky:
            calls = 0

            async def sync_change_set(self, change_set_storage_id):
                Flaky.calls += 1
                if Flaky.calls == 1:
                    raise BackendUnavailableError("trusted node restarting")
                await b.trusted.sync_change_set(change_set_storage_id)

        a = await SyncNode(network, NODE_A, trusted=Flaky()).start()
        await a.connector.set({"id": "1", "value1": "aaa"})

        assert await a.sync.push() is not None
        assert Flaky.calls == 2
        assert await b.backend.get("1") is not None

    @pytest.mark.asyncio
    async def test_change_captured_during_push_survives(self, network):
        b = await SyncNode(network, NODE_B, authoritative=True).start()
        holder = {}

        class Rewriting:
            async def sync_change_set(self, change_set_storage_id):
                await b.trusted.sync_change_set(change_set_storage_id)
                await holder["a"].connector.set({"id": "1", "value1": "newer"})

        a = await SyncNode(network, NODE_A, trusted=Rewriting()).start()
        holder["a"] = a
        await a.connector.set({"id": "1", "value1": "aaa"})
        await a.connector.set({"id": "2", "value1": "bbb"})

        await a.sync.push()

        assert await a.local_changes() == [("set", "1")]

    @pytest.mark.asyncio
    async def test_trusted_component_by_name(self, network):
        b = await SyncNode(network, NODE_B, authoritative=True).start()
        connector_factory.register_component("trusted-b", b.trusted)
        network.identity.create_key(NODE_A, METHOD)
        named = SynchronisedStorageService(
            MemoryEntityStorageConnector(SCHEMA),
            MemoryEntityStorageConnector(SYNC_SNAPSHOT_ENTRY_SCHEMA),
            network.blobs,
            network.verifiable,
            network.identity,
            SyncConfig(enabled=True, verifiable_storage_key=KEY, entity_update_interval_ms=0),
            trusted_component_name="trusted-b",
        )
        try:
            await named.start(NODE_A)
            await named.sync_entity_remove("1")

            assert await named.push() is not None
            assert (await current_state(b)).snapshots[0].change_set_storage_ids
        finally:
            connector_factory.unregister_component("trusted-b")
            await named.stop()


class TestVerification:
    """Tests for proofs, forged change-sets and allow-lists."""

    async def forge(self, network, node):
        """Store a change-set claiming to come from an unknown node, signed by node A."""
        change_set = SyncChangeSet(
            id="forged",
            date_created="2026-01-01T00:00:00+00:00",
            changes=[SyncChange(SyncOperation.SET, id="9", entity={"id": "9", "value1": "evil"})],
            node_identity="did:entity-storage:evil",
        )
        change_set.proof = await network.identity.create_proof(
            NODE_A, f"{NODE_A}#{METHOD}", change_set.unsigned_dict()
        )
        helper = ChangeSetHelper(node.backend, network.blobs, network.identity, METHOD)
        return await helper.store_change_set(change_set)

    @pytest.mark.asyncio
    async def test_forged_change_set_refused_by_trusted_node(self, nodes, network):
        _, b, _ = nodes
        forged = await self.forge(network, b)

        with pytest.raises(SignatureInvalidError):
            await b.trusted.sync_change_set(forged)

        assert await b.backend.get("9") is None

    @pytest.mark.asyncio
    async def test_forged_change_set_marked_processed_not_applied(self, nodes, network):
        _, b, c = nodes
        forged = await self.forge(network, b)
        await b.sync.remote_state.add_change_set_to_sync_state(KEY, forged)

        assert await c.sync.pull() is True

        assert await c.backend.get("9") is None
        snapshot = (await current_state(c)).snapshots[0]
        entry = await c.snapshots.get(snapshot.id)
        assert forged in entry["changeSetStorageIds"]

    @pytest.mark.asyncio
    async def test_tampered_change_set_rejected(self, nodes, network):
        a, b, _ = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        change_set_storage_id = await a.sync.push()
        helper = ChangeSetHelper(b.backend, network.blobs, network.identity, METHOD)
        change_set = await helper.get_change_set(change_set_storage_id)
        change_set.changes[0].entity["value1"] = "tampered"
        tampered = await helper.store_change_set(change_set)

        assert await helper.verify_change_set_proof(change_set) is False
        with pytest.raises(SignatureInvalidError):
            await helper.get_and_apply_change_set(tampered)

    @pytest.mark.asyncio
    async def test_allow_list(self, network):
        b = SyncNode(network, NODE_B, authoritative=True)
        trusted = TrustedSynchronisedStorageService(
            b.backend,
            network.blobs,
            network.verifiable,
            network.identity,
            b.config,
            allowed_identities=[NODE_A],
            remote_state=b.sync.remote_state,
        )
        c = await SyncNode(network, NODE_C, trusted=trusted).start()
        await c.connector.set({"id": "1", "value1": "ccc"})

        with pytest.raises(GuardError, match="may not push"):
            await c.sync.push()

        assert await b.backend.get("1") is None

    @pytest.mark.asyncio
    async def test_trusted_rejects_bad_ids(self, nodes, network):
        _, b, _ = nodes
        with pytest.raises(GuardError):
            await b.trusted.sync_change_set("not-a-blob-id")
        with pytest.raises(GuardError):
            await b.trusted.sync_change_set("")

        missing = await network.blobs.set(b"gone")
        await network.blobs.remove(missing)
        with pytest.raises(NotFoundError):
            await b.trusted.sync_change_set(missing)


class TestApplyOrdering:
    """Tests for resume and last-writer-wins."""

    @pytest.mark.asyncio
    async def test_resume_after_last_applied_change(self, nodes):
        _, b, c = nodes
        await b.connector.set({"id": "1", "value1": "first"})
        await b.connector.set({"id": "2", "value1": "second"})
        await b.sync.push()
        snapshot = (await current_state(c)).snapshots[0]
        interrupted = SyncSnapshotEntry(
            id=snapshot.id,
            context=KEY,
            date_created=snapshot.date_created,
            is_local_snapshot=False,
            change_set_storage_ids=[],
            applying_change_set_storage_id=snapshot.change_set_storage_ids[0],
            applied_change_index=0,
        )
        await c.snapshots.set(interrupted.to_dict())

        assert await c.sync.pull() is True

        assert await c.ids() == ["2"]
        entry = await c.snapshots.get(snapshot.id)
        assert entry["changeSetStorageIds"] == snapshot.change_set_storage_ids
        assert "applyingChangeSetStorageId" not in entry

    @pytest.mark.asyncio
    async def test_progress_reported_per_change(self, network):
        node = SyncNode(network, NODE_B, authoritative=True)
        helper = ChangeSetHelper(node.backend, network.blobs, network.identity, METHOD)
        change_set = SyncChangeSet(
            id="cs",
            date_created="2026-01-01T00:00:00+00:00",
            changes=[
                SyncChange(SyncOperation.SET, id=str(i), entity={"id": str(i)}) for i in range(3)
            ],
            node_identity=NODE_A,
        )
        seen = []

        async def progress(index):
            seen.append(index)

        written = await helper.apply_change_set(change_set, start_index=1, on_progress=progress)

        assert written == 2
        assert seen == [1, 2]
        assert await node.ids() == ["1", "2"]

    @pytest.mark.asyncio
    async def test_older_change_skipped(self, network):
        node = SyncNode(network, NODE_B, authoritative=True)
        helper = ChangeSetHelper(node.backend, network.blobs, network.identity, METHOD)
        await node.backend.set(
            {"id": "1", "value1": "newer", "dateModified": "2026-01-02T00:00:00+00:00"}
        )
        stale = SyncChangeSet(
            id="cs",
            date_created="2026-01-01T00:00:00+00:00",
            changes=[
                SyncChange(
                    SyncOperation.SET,
                    id="1",
                    entity={"id": "1", "value1": "older", "dateModified": "2026-01-01T00:00:00+00:00"},
                )
            ],
            node_identity=NODE_A,
        )

        assert await helper.apply_change_set(stale) == 0
        assert (await node.backend.get("1"))["value1"] == "newer"

        stale.changes[0].entity["dateModified"] = "2026-01-03T00:00:00+00:00"
        assert await helper.apply_change_set(stale) == 1
        assert (await node.backend.get("1"))["value1"] == "older"
        assert (await node.backend.get("1"))["nodeIdentity"] == NODE_A


class TestConsolidation:
    """Tests for run_consolidation_cycle."""

    @pytest.mark.asyncio
    async def test_consolidated_state_rebuilds_new_node(self, nodes, network):
        a, b, _ = nodes
        for i in range(3):
            await a.connector.set({"id": f"a{i}", "value1": "a"})
        await a.sync.push()
        await b.connector.set({"id": "b0", "value1": "b"})
        await b.sync.push()

        count = await b.sync.run_consolidation_cycle()

        assert count == 2
        state = await current_state(b)
        assert len(state.snapshots) == 1
        assert len(state.snapshots[0].change_set_storage_ids) == 2
        assert await b.local_changes() == []

        d = await SyncNode(network, "did:entity-storage:node-d", trusted=b.trusted).start()
        assert await d.sync.pull() is True
        assert await d.ids() == ["a0", "a1", "a2", "b0"]
        assert (await d.backend.get("a0"))["nodeIdentity"] == NODE_A
        assert (await d.backend.get("b0"))["nodeIdentity"] == NODE_B
        await d.sync.stop()

    @pytest.mark.asyncio
    async def test_follower_resyncs_after_consolidation(self, nodes):
        a, b, c = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})
        await a.sync.push()
        await c.sync.pull()

        await b.sync.run_consolidation_cycle()
        await a.connector.set({"id": "2", "value1": "bbb"})
        await a.sync.push()

        assert await c.sync.pull() is True
        assert await c.ids() == ["1", "2"]

    @pytest.mark.asyncio
    async def test_empty_store(self, nodes):
        _, b, c = nodes

        assert await b.sync.run_consolidation_cycle() == 0
        assert await c.sync.pull() is True

    @pytest.mark.asyncio
    async def test_follower_never_consolidates(self, nodes):
        a, _, _ = nodes
        await a.connector.set({"id": "1", "value1": "aaa"})

        assert await a.sync.run_consolidation_cycle() == 0
        assert await a.local_changes() == [("set", "1")]


class TestServiceLifecycle:
    """Tests for construction checks and the periodic loops."""

    def test_schema_requires_sync_properties(self, network):
        schema = EntitySchema(name="Plain", properties=(prop("id", "string", is_primary=True),))

        with pytest.raises(ConfigurationError, match="nodeIdentity"):
            SynchronisedStorageService(
                MemoryEntityStorageConnector(schema),
                MemoryEntityStorageConnector(SYNC_SNAPSHOT_ENTRY_SCHEMA),
                network.blobs,
                network.verifiable,
                network.identity,
                SyncConfig(enabled=True, verifiable_storage_key=KEY, is_authoritative_node=True),
            )

    def test_follower_requires_trusted_component(self, network):
        with pytest.raises(ConfigurationError, match="trusted"):
            SyncNode(network, NODE_A)

    def test_requires_storage_key(self, network):
        with pytest.raises(ConfigurationError):
            SyncNode(network, NODE_B, authoritative=True, verifiable_storage_key=None)

    @pytest.mark.asyncio
    async def test_loops_propagate_changes(self, network):
        b = await SyncNode(network, NODE_B, authoritative=True, entity_update_interval_ms=20).start()
        a = await SyncNode(network, NODE_A, trusted=b.trusted, entity_update_interval_ms=20).start()
        c = await SyncNode(network, NODE_C, trusted=b.trusted, entity_update_interval_ms=20).start()
        try:
            await a.connector.set({"id": "1", "value1": "aaa"})
            for _ in range(200):
                if await c.backend.get("1") is not None:
                    break
                await asyncio.sleep(0.02)

            assert await c.backend.get("1") is not None
            assert a.sync.stats["pushes"] >= 1
            assert a.sync.stats["running"] is True
        finally:
            for node in (a, b, c):
                await node.sync.stop()
        assert a.sync.stats["running"] is False

    @pytest.mark.asyncio
    async def test_loop_failures_recorded(self, network):
        class Refusing:
            async def sync_change_set(self, change_set_storage_id):
                raise GuardError("Trusted", "changeSetStorageId", "refused")

        a = await SyncNode(
            network, NODE_A, trusted=Refusing(), entity_update_interval_ms=20
        ).start()
        try:
            await a.connector.set({"id": "1", "value1": "aaa"})
            for _ in range(200):
                if a.sync.stats["failures"]:
                    break
                await asyncio.sleep(0.02)
        finally:
            await a.sync.stop()

        assert a.sync.stats["failures"] >= 1
        assert "refused" in a.sync.stats["last_error"]
        assert await a.local_changes() == [("set", "1")]

    @pytest.mark.asyncio
    async def test_consolidation_loop(self, network):
        b = await SyncNode(
            network, NODE_B, authoritative=True, consolidation_interval_ms=20
        ).start()
        try:
            await b.connector.set({"id": "1", "value1": "bbb"})
            for _ in range(200):
                if b.sync.stats["consolidations"]:
                    break
                await asyncio.sleep(0.02)
        finally:
            await b.sync.stop()

        assert b.sync.stats["consolidations"] >= 1
        assert len((await current_state(b)).snapshots) == 1
