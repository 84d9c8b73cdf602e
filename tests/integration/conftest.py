"""
Shared fixtures for integration tests.

Backends without external services (memory, file, sqlite) always run.
PostgreSQL, MySQL, MongoDB and ScyllaDB join the parametrised backends when
their connection settings are present in the environment:

    ENTITY_STORAGE_POSTGRES_HOST / _USER / _PASSWORD / _DATABASE
    ENTITY_STORAGE_MYSQL_HOST / _USER / _PASSWORD / _DATABASE
    ENTITY_STORAGE_MONGO_URL / _DATABASE
    ENTITY_STORAGE_SCYLLADB_HOSTS / _KEYSPACE / _LOCAL_DC
"""

import os
import tempfile
import uuid

import pytest

from estore.entity_storage.config import (
    FileConnectorConfig,
    MongoConnectorConfig,
    MySqlConnectorConfig,
    PostgresConnectorConfig,
    ScyllaDbConnectorConfig,
    SqliteConnectorConfig,
)
from estore.entity_storage.connectors import MemoryEntityStorageConnector, UndefinedPropertyMode
from estore.entity_storage.schema import EntitySchema, prop

ITEM_SCHEMA = EntitySchema(
    name="TestItem",
    properties=(
        prop("id", "string", is_primary=True),
        prop("value1", "string", is_secondary=True),
        prop("value2", "integer", optional=True, sort_direction="asc"),
        prop("value3", "number", optional=True),
        prop("valueObject", "object", optional=True),
        prop("valueArray", "array", optional=True),
        prop("nodeIdentity", "string", is_secondary=True, optional=True),
        prop("dateCreated", "string", format="date-time", sort_direction="asc", optional=True),
        prop("dateModified", "string", format="date-time", optional=True),
    ),
)

BACKENDS = ["memory", "file", "sqlite"]
if os.getenv("ENTITY_STORAGE_POSTGRES_HOST"):
    BACKENDS.append("postgres")
if os.getenv("ENTITY_STORAGE_MYSQL_HOST"):
    BACKENDS.append("mysql")
if os.getenv("ENTITY_STORAGE_MONGO_URL"):
    BACKENDS.append("mongodb")
if os.getenv("ENTITY_STORAGE_SCYLLADB_HOSTS"):
    BACKENDS.append("scylladb")


def make_connector(backend, directory, schema=ITEM_SCHEMA, mode=UndefinedPropertyMode.REMOVE):
    """Build an unbootstrapped connector for a backend name."""
    container = f"t_{uuid.uuid4().hex[:12]}"
    if backend == "memory":
        return MemoryEntityStorageConnector(schema, undefined_mode=mode)
    if backend == "file":
        from estore.entity_storage.connectors.file import FileEntityStorageConnector

        return FileEntityStorageConnector(
            schema, FileConnectorConfig(directory=os.path.join(directory, container)), mode
        )
    if backend == "sqlite":
        from estore.entity_storage.connectors.sqlite import SqliteEntityStorageConnector

        return SqliteEntityStorageConnector(
            schema,
            SqliteConnectorConfig(
                database_path=os.path.join(directory, "entities.db"), table_name=container
            ),
            mode,
        )
    if backend == "postgres":
        from estore.entity_storage.connectors.postgres import PostgresEntityStorageConnector

        config = PostgresConnectorConfig.from_env()
        return PostgresEntityStorageConnector(
            schema,
            PostgresConnectorConfig(
                host=config.host,
                port=config.port,
                user=config.user,
                password=config.password,
                database=config.database or "entity_storage_test",
                table_name=container,
            ),
            mode,
        )
    if backend == "mongodb":
        from estore.entity_storage.connectors.mongodb import MongoEntityStorageConnector

        config = MongoConnectorConfig.from_env()
        return MongoEntityStorageConnector(
            schema,
            MongoConnectorConfig(
                url=config.url,
                database=config.database or "entity_storage_test",
                collection_name=container,
            ),
            mode,
        )
    if backend == "mysql":
        from estore.entity_storage.connectors.mysql import MySqlEntityStorageConnector

        config = MySqlConnectorConfig.from_env()
        return MySqlEntityStorageConnector(
            schema,
            MySqlConnectorConfig(
                host=config.host,
                port=config.port,
                user=config.user,
                password=config.password,
                database=config.database or "entity_storage_test",
                table_name=container,
            ),
            mode,
        )
    if backend == "scylladb":
        from estore.entity_storage.connectors.scylladb import ScyllaDbEntityStorageConnector

        config = ScyllaDbConnectorConfig.from_env()
        return ScyllaDbEntityStorageConnector(
            schema,
            ScyllaDbConnectorConfig(
                hosts=config.hosts,
                port=config.port,
                local_data_center=config.local_data_center,
                keyspace=config.keyspace or "entity_storage_test",
                username=config.username,
                password=config.password,
                table_name=container,
            ),
            mode,
        )
    raise ValueError(f"Unknown backend {backend}")


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture(params=BACKENDS)
def backend(request):
    return request.param


@pytest.fixture
async def connector(backend, data_dir):
    """A bootstrapped connector for each available backend."""
    conn = make_connector(backend, data_dir)
    assert await conn.bootstrap() is True
    yield conn
    await conn.close()


@pytest.fixture
def build_connector(data_dir):
    """Factory for unbootstrapped connectors sharing the test's data directory."""

    def build(backend, schema=ITEM_SCHEMA, mode=UndefinedPropertyMode.REMOVE):
        return make_connector(backend, data_dir, schema, mode)

    return build
