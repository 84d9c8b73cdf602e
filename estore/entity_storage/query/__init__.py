"""
Query compilation for SQL, document and wide-column backends.

The in-memory evaluator in ``conditions`` defines what a condition means;
the builders here translate the same tree for each backend family:
- QueryCompiler + SqlDialect: parameterised SQL (PostgreSQL, SQLite, MySQL)
- CqlQueryBuilder + CqlDialect: CQL statements (ScyllaDB, Cassandra)
- MongoFilterBuilder: MongoDB filter documents
- DynamoExpressionBuilder: DynamoDB key/filter expressions

Invariants:
    - Caller values never appear in query text
    - Every builder agrees with the reference evaluator
"""

from .compiler import (
    EXTRA_COLUMN,
    MYSQL_DIALECT,
    POSTGRES_DIALECT,
    SQLITE_DIALECT,
    MySqlDialect,
    PostgresDialect,
    QueryCompiler,
    SqlDialect,
    SqliteDialect,
    canonical_json,
    flatten_object,
)
from .cql import (
    CQL_DIALECT,
    PARTITION_COLUMN,
    CqlDialect,
    CqlFilter,
    CqlQueryBuilder,
)
from .dynamo import (
    PARTITION_KEY,
    PARTITION_VALUE,
    DynamoExpression,
    DynamoExpressionBuilder,
    from_attribute_value,
    from_item,
    index_name,
    to_attribute_value,
    to_item,
)
from .mongo import MongoFilterBuilder, canonical_document

__all__ = [
    # SQL
    "QueryCompiler",
    "SqlDialect",
    "PostgresDialect",
    "SqliteDialect",
    "MySqlDialect",
    "POSTGRES_DIALECT",
    "SQLITE_DIALECT",
    "MYSQL_DIALECT",
    "EXTRA_COLUMN",
    "canonical_json",
    "flatten_object",
    # CQL
    "CqlDialect",
    "CqlFilter",
    "CqlQueryBuilder",
    "CQL_DIALECT",
    "PARTITION_COLUMN",
    # Documents
    "MongoFilterBuilder",
    "canonical_document",
    # DynamoDB
    "DynamoExpression",
    "DynamoExpressionBuilder",
    "PARTITION_KEY",
    "PARTITION_VALUE",
    "index_name",
    "to_attribute_value",
    "from_attribute_value",
    "to_item",
    "from_item",
]
