"""
Entity storage connectors.

Every backend implements the EntityStorageConnector protocol and is
registered in the process-wide connector_factory under its name. Backend
modules are imported lazily so that optional drivers (asyncpg, aiomysql,
motor, aiobotocore, cassandra-driver) are only needed when their backend is used.
"""

from __future__ import annotations

from typing import Any

from .base import (
    DEFAULT_PAGE_SIZE,
    UNDEFINED,
    ConnectorFactory,
    EntityStorageConnector,
    QueryResult,
    UndefinedPropertyMode,
    connector_factory,
    create_connector,
)
from .memory import MemoryEntityStorageConnector


def _file(**kwargs: Any) -> EntityStorageConnector:
    from .file import FileEntityStorageConnector

    return FileEntityStorageConnector(**kwargs)


def _sqlite(**kwargs: Any) -> EntityStorageConnector:
    from .sqlite import SqliteEntityStorageConnector

    return SqliteEntityStorageConnector(**kwargs)


def _postgres(**kwargs: Any) -> EntityStorageConnector:
    from .postgres import PostgresEntityStorageConnector

    return PostgresEntityStorageConnector(**kwargs)


def _mysql(**kwargs: Any) -> EntityStorageConnector:
    from .mysql import MySqlEntityStorageConnector

    return MySqlEntityStorageConnector(**kwargs)


def _mongodb(**kwargs: Any) -> EntityStorageConnector:
    from .mongodb import MongoEntityStorageConnector

    return MongoEntityStorageConnector(**kwargs)


def _dynamodb(**kwargs: Any) -> EntityStorageConnector:
    from .dynamodb import DynamoDbEntityStorageConnector

    return DynamoDbEntityStorageConnector(**kwargs)


def _scylladb(**kwargs: Any) -> EntityStorageConnector:
    from .scylladb import ScyllaDbEntityStorageConnector

    return ScyllaDbEntityStorageConnector(**kwargs)


def _synchronised(**kwargs: Any) -> EntityStorageConnector:
    from ..sync.connector import SynchronisedEntityStorageConnector

    return SynchronisedEntityStorageConnector(**kwargs)


connector_factory.register("memory", MemoryEntityStorageConnector)
connector_factory.register("file", _file)
connector_factory.register("sqlite", _sqlite)
connector_factory.register("postgres", _postgres)
connector_factory.register("mysql", _mysql)
connector_factory.register("mongodb", _mongodb)
connector_factory.register("dynamodb", _dynamodb)
connector_factory.register("scylladb", _scylladb)
connector_factory.register("synchronised", _synchronised)

__all__ = [
    "DEFAULT_PAGE_SIZE",
    "UNDEFINED",
    "ConnectorFactory",
    "EntityStorageConnector",
    "MemoryEntityStorageConnector",
    "QueryResult",
    "UndefinedPropertyMode",
    "connector_factory",
    "create_connector",
]
