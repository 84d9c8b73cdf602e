"""
Integration tests for the node orchestrator.

Tests cover:
- Schema loading from a JSON document
- Node start/stop with the memory and sqlite backends
- Starting an authoritative node with sync enabled
- Startup failures
- Logging setup
"""

import json
import logging
import os
from dataclasses import replace

import json_log_formatter
import pytest

from estore.entity_storage.config import (
    ConnectorBackend,
    ConnectorConfig,
    IdentityConfig,
    NodeConfig,
    ObservabilityConfig,
    SqliteConnectorConfig,
    SyncConfig,
)
from estore.entity_storage.errors import ConfigurationError
from estore.entity_storage.main import Node, load_schema, setup_logging
from estore.entity_storage.schema import EntitySchema, get_registry, prop, reset_registry
from estore.entity_storage.sync import SynchronisedEntityStorageConnector

SCHEMA_DOCUMENT = {
    "name": "Task",
    "properties": [
        {"property": "id", "type": "string", "isPrimary": True},
        {"property": "title", "type": "string"},
        {"property": "priority", "type": "integer", "optional": True, "sortDirection": "desc"},
        {"property": "nodeIdentity", "type": "string", "isSecondary": True, "optional": True},
        {
            "property": "dateCreated",
            "type": "string",
            "format": "date-time",
            "sortDirection": "asc",
            "optional": True,
        },
        {"property": "dateModified", "type": "string", "format": "date-time", "optional": True},
    ],
}

NODE = "did:entity-storage:node-a"
USER = "did:user:alice"


@pytest.fixture(autouse=True)
def fresh_registry():
    reset_registry()
    yield
    reset_registry()


@pytest.fixture
def schema_file(tmp_path):
    path = os.path.join(tmp_path, "task.json")
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(SCHEMA_DOCUMENT, handle)
    return path


class TestLoadSchema:
    """Tests for load_schema."""

    def test_loads_and_registers(self, schema_file):
        schema = load_schema(schema_file)

        assert schema.name == "Task"
        assert schema.primary_key.property == "id"
        assert get_registry().get("Task") is schema

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            load_schema(os.path.join(tmp_path, "nope.json"))

        assert "nope.json" in str(exc_info.value)

    def test_invalid_document(self, tmp_path):
        path = os.path.join(tmp_path, "broken.json")
        with open(path, "w", encoding="utf-8") as handle:
            handle.write("{not json")

        with pytest.raises(ConfigurationError):
            load_schema(path)


class TestNodeLifecycle:
    """Tests for Node.start and Node.stop."""

    @pytest.mark.asyncio
    async def test_memory_node(self, schema_file):
        node = Node(NodeConfig(schema_file=schema_file))

        await node.start()
        try:
            await node.service.set(
                {"id": "t-1", "title": "Write report"}, user_identity=USER, node_identity=NODE
            )
            entity = await node.service.get("t-1", user_identity=USER, node_identity=NODE)
        finally:
            await node.stop()

        assert entity["title"] == "Write report"
        assert get_registry().frozen
        assert node.sync_service is None

    @pytest.mark.asyncio
    async def test_sqlite_node_persists(self, schema_file, tmp_path):
        connector = ConnectorConfig(
            backend=ConnectorBackend.SQLITE,
            sqlite=SqliteConnectorConfig(database_path=os.path.join(tmp_path, "tasks.db")),
        )
        config = NodeConfig(
            schema_file=schema_file, include_user_identity=False, include_node_identity=False
        )
        config = replace(config, connector=connector)

        node = Node(config)
        await node.start()
        await node.service.set({"id": "t-1", "title": "Plan"})
        await node.stop()

        reopened = Node(config)
        await reopened.start()
        try:
            entity = await reopened.service.get("t-1")
        finally:
            await reopened.stop()

        assert entity == {"id": "t-1", "title": "Plan"}

    @pytest.mark.asyncio
    async def test_explicit_schema(self):
        schema = EntitySchema(
            name="Tag",
            properties=(prop("id", "string", is_primary=True), prop("label", "string")),
        )
        node = Node(NodeConfig(include_user_identity=False, include_node_identity=False), schema=schema)

        await node.start()
        try:
            assert node.service.connector.get_schema() is schema
        finally:
            await node.stop()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, schema_file):
        node = Node(NodeConfig(schema_file=schema_file))
        await node.start()

        await node.stop()
        await node.stop()

    @pytest.mark.asyncio
    async def test_start_without_schema_fails(self):
        node = Node(NodeConfig())

        with pytest.raises(ConfigurationError):
            await node.start()

        assert node.service is None

    @pytest.mark.asyncio
    async def test_backend_bootstrap_failure(self, schema_file, tmp_path):
        blocker = os.path.join(tmp_path, "blocker")
        with open(blocker, "w", encoding="utf-8") as handle:
            handle.write("not a directory")
        connector = ConnectorConfig(
            backend=ConnectorBackend.SQLITE,
            sqlite=SqliteConnectorConfig(database_path=os.path.join(blocker, "tasks.db")),
        )
        node = Node(replace(NodeConfig(schema_file=schema_file), connector=connector))

        with pytest.raises(ConfigurationError):
            await node.start()


class TestSyncNode:
    """Tests for a node with the sync engine enabled."""

    @pytest.mark.asyncio
    async def test_authoritative_node(self, schema_file, tmp_path):
        config = NodeConfig(
            schema_file=schema_file,
            identity=IdentityConfig(
                node_identity=NODE, key_store_path=os.path.join(tmp_path, "keys.json")
            ),
            sync=SyncConfig(
                enabled=True,
                verifiable_storage_key="tasks-sync",
                is_authoritative_node=True,
                entity_update_interval_ms=0,
                consolidation_interval_ms=0,
            ),
        )
        node = Node(config)

        await node.start()
        try:
            assert isinstance(node.connector, SynchronisedEntityStorageConnector)
            assert node.trusted_sync is not None

            await node.service.set(
                {"id": "t-1", "title": "Review"}, user_identity=USER, node_identity=NODE
            )
            assert await node.sync_service.push() is not None
        finally:
            await node.stop()

        assert os.path.exists(os.path.join(tmp_path, "keys.json"))
        assert not node.sync_service.stats["running"]

    @pytest.mark.asyncio
    async def test_sync_requires_node_identity(self, schema_file):
        config = NodeConfig(
            schema_file=schema_file,
            sync=SyncConfig(enabled=True, verifiable_storage_key="k", is_authoritative_node=True),
        )

        with pytest.raises(ConfigurationError):
            await Node(config).start()


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        setup_logging(NodeConfig(observability=ObservabilityConfig(log_level="DEBUG")))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert logging.getLogger("botocore").level == logging.WARNING

    def test_text_format(self):
        setup_logging(
            NodeConfig(observability=ObservabilityConfig(log_level="warning", log_format="text"))
        )

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
