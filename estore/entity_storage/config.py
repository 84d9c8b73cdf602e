"""
Configuration management for an Entity Storage node.

All configuration is done via environment variables; there are no config
files inside containers apart from the entity schema document. This module
provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for the connector and
      sync settings
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Each connector validates its own section at construction; validate()
      here only checks cross-section consistency
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum

from .connectors.base import UndefinedPropertyMode
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class ConnectorBackend(Enum):
    """Supported entity storage backends."""

    MEMORY = "memory"
    FILE = "file"
    SQLITE = "sqlite"
    POSTGRES = "postgres"
    MYSQL = "mysql"
    MONGODB = "mongodb"
    DYNAMODB = "dynamodb"
    SCYLLADB = "scylladb"


class BlobBackend(Enum):
    """Supported blob storage backends."""

    MEMORY = "memory"
    FILE = "file"
    S3 = "s3"


class VerifiableBackend(Enum):
    """Supported verifiable storage backends."""

    MEMORY = "memory"
    FILE = "file"


@dataclass(frozen=True)
class FileConnectorConfig:
    """File connector configuration.

    Attributes:
        directory: Directory holding the partition and index documents
        partition_count: Number of logical partitions
    """

    directory: str = ""
    partition_count: int = 4

    @classmethod
    def from_env(cls) -> FileConnectorConfig:
        """Load configuration from environment variables."""
        return cls(
            directory=os.getenv("ENTITY_STORAGE_FILE_DIR", ""),
            partition_count=int(os.getenv("ENTITY_STORAGE_FILE_PARTITIONS", "4")),
        )


@dataclass(frozen=True)
class SqliteConnectorConfig:
    """SQLite connector configuration.

    Attributes:
        database_path: Path of the database file
        table_name: Table name (defaults to the schema name)
        busy_timeout_ms: SQLite busy timeout in milliseconds
        wal_mode: SQLite WAL mode enabled
    """

    database_path: str = ""
    table_name: str | None = None
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> SqliteConnectorConfig:
        """Load configuration from environment variables."""
        return cls(
            database_path=os.getenv("ENTITY_STORAGE_SQLITE_PATH", ""),
            table_name=os.getenv("ENTITY_STORAGE_SQLITE_TABLE"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
        )


@dataclass(frozen=True)
class PostgresConnectorConfig:
    """PostgreSQL connector configuration.

    Attributes:
        host: Server host
        port: Server port
        user: Login role
        password: Password (never logged)
        database: Database holding the entity tables (created when missing)
        admin_database: Database used to check for and create ``database``
        table_name: Table name (defaults to the schema name)
        ssl: Require TLS
        min_pool_size: Minimum pool connections
        max_pool_size: Maximum pool connections
        command_timeout_seconds: Per-statement timeout
    """

    host: str = "localhost"
    port: int = 5432
    user: str = ""
    password: str = ""
    database: str = ""
    admin_database: str = "postgres"
    table_name: str | None = None
    ssl: bool = False
    min_pool_size: int = 1
    max_pool_size: int = 10
    command_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> PostgresConnectorConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("ENTITY_STORAGE_POSTGRES_HOST", "localhost"),
            port=int(os.getenv("ENTITY_STORAGE_POSTGRES_PORT", "5432")),
            user=os.getenv("ENTITY_STORAGE_POSTGRES_USER", ""),
            password=os.getenv("ENTITY_STORAGE_POSTGRES_PASSWORD", ""),
            database=os.getenv("ENTITY_STORAGE_POSTGRES_DATABASE", ""),
            admin_database=os.getenv("ENTITY_STORAGE_POSTGRES_ADMIN_DATABASE", "postgres"),
            table_name=os.getenv("ENTITY_STORAGE_POSTGRES_TABLE"),
            ssl=_env_bool("ENTITY_STORAGE_POSTGRES_SSL", "false"),
            min_pool_size=int(os.getenv("ENTITY_STORAGE_POSTGRES_MIN_POOL", "1")),
            max_pool_size=int(os.getenv("ENTITY_STORAGE_POSTGRES_MAX_POOL", "10")),
            command_timeout_seconds=float(os.getenv("ENTITY_STORAGE_POSTGRES_TIMEOUT", "30")),
        )


@dataclass(frozen=True)
class MySqlConnectorConfig:
    """MySQL connector configuration.

    Attributes:
        host: Server host
        port: Server port
        user: Login user
        password: Password (never logged)
        database: Database holding the entity tables (created when missing)
        table_name: Table name (defaults to the schema name)
        min_pool_size: Minimum pool connections
        max_pool_size: Maximum pool connections
        connect_timeout_seconds: Connection timeout
    """

    host: str = "localhost"
    port: int = 3306
    user: str = ""
    password: str = ""
    database: str = ""
    table_name: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 10
    connect_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> MySqlConnectorConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("ENTITY_STORAGE_MYSQL_HOST", "localhost"),
            port=int(os.getenv("ENTITY_STORAGE_MYSQL_PORT", "3306")),
            user=os.getenv("ENTITY_STORAGE_MYSQL_USER", ""),
            password=os.getenv("ENTITY_STORAGE_MYSQL_PASSWORD", ""),
            database=os.getenv("ENTITY_STORAGE_MYSQL_DATABASE", ""),
            table_name=os.getenv("ENTITY_STORAGE_MYSQL_TABLE"),
            min_pool_size=int(os.getenv("ENTITY_STORAGE_MYSQL_MIN_POOL", "1")),
            max_pool_size=int(os.getenv("ENTITY_STORAGE_MYSQL_MAX_POOL", "10")),
            connect_timeout_seconds=float(os.getenv("ENTITY_STORAGE_MYSQL_TIMEOUT", "10")),
        )


@dataclass(frozen=True)
class MongoConnectorConfig:
    """MongoDB connector configuration.

    Attributes:
        url: Connection string (may carry credentials; never logged)
        database: Database name
        collection_name: Collection name (defaults to the schema name)
        server_selection_timeout_ms: How long to wait for a reachable server
    """

    url: str = ""
    database: str = ""
    collection_name: str | None = None
    server_selection_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> MongoConnectorConfig:
        """Load configuration from environment variables."""
        return cls(
            url=os.getenv("ENTITY_STORAGE_MONGO_URL", ""),
            database=os.getenv("ENTITY_STORAGE_MONGO_DATABASE", ""),
            collection_name=os.getenv("ENTITY_STORAGE_MONGO_COLLECTION"),
            server_selection_timeout_ms=int(
                os.getenv("ENTITY_STORAGE_MONGO_SELECTION_TIMEOUT_MS", "5000")
            ),
        )


@dataclass(frozen=True)
class DynamoDbConnectorConfig:
    """DynamoDB connector configuration.

    Attributes:
        region: AWS region
        table_name: Table name (defaults to the schema name)
        endpoint_url: Custom endpoint URL (for LocalStack testing)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        wait_delay_seconds: Poll delay while waiting for a new table
    """

    region: str = "us-east-1"
    table_name: str | None = None
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    wait_delay_seconds: int = 2

    @classmethod
    def from_env(cls) -> DynamoDbConnectorConfig:
        """Load configuration from environment variables."""
        return cls(
            region=os.getenv("DYNAMODB_REGION", os.getenv("AWS_REGION", "us-east-1")),
            table_name=os.getenv("ENTITY_STORAGE_DYNAMODB_TABLE"),
            endpoint_url=os.getenv("DYNAMODB_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            wait_delay_seconds=int(os.getenv("DYNAMODB_WAIT_DELAY_SECONDS", "2")),
        )


@dataclass(frozen=True)
class ScyllaDbConnectorConfig:
    """ScyllaDB (or Cassandra) connector configuration.

    Attributes:
        hosts: Contact points
        port: Native protocol port
        local_data_center: Data center preferred by the load balancing policy
        keyspace: Keyspace holding the entity tables (created when missing)
        table_name: Table name (defaults to the schema name)
        username: Login user, empty for no authentication
        password: Password (never logged)
        replication_factor: SimpleStrategy replication factor for a new keyspace
        request_timeout_seconds: Per-request timeout
    """

    hosts: tuple[str, ...] = ("localhost",)
    port: int = 9042
    local_data_center: str = "datacenter1"
    keyspace: str = ""
    table_name: str | None = None
    username: str = ""
    password: str = ""
    replication_factor: int = 1
    request_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> ScyllaDbConnectorConfig:
        """Load configuration from environment variables."""
        return cls(
            hosts=tuple(
                host.strip()
                for host in os.getenv("ENTITY_STORAGE_SCYLLADB_HOSTS", "localhost").split(",")
                if host.strip()
            ),
            port=int(os.getenv("ENTITY_STORAGE_SCYLLADB_PORT", "9042")),
            local_data_center=os.getenv("ENTITY_STORAGE_SCYLLADB_LOCAL_DC", "datacenter1"),
            keyspace=os.getenv("ENTITY_STORAGE_SCYLLADB_KEYSPACE", ""),
            table_name=os.getenv("ENTITY_STORAGE_SCYLLADB_TABLE"),
            username=os.getenv("ENTITY_STORAGE_SCYLLADB_USER", ""),
            password=os.getenv("ENTITY_STORAGE_SCYLLADB_PASSWORD", ""),
            replication_factor=int(os.getenv("ENTITY_STORAGE_SCYLLADB_REPLICATION", "1")),
            request_timeout_seconds=float(os.getenv("ENTITY_STORAGE_SCYLLADB_TIMEOUT", "10")),
        )


@dataclass(frozen=True)
class ConnectorConfig:
    """Which backend stores entities, plus one section per backend.

    Attributes:
        backend: The selected backend
        undefined_property_mode: Treatment of undefined values on write
    """

    backend: ConnectorBackend = ConnectorBackend.MEMORY
    undefined_property_mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE
    file: FileConnectorConfig = field(default_factory=FileConnectorConfig)
    sqlite: SqliteConnectorConfig = field(default_factory=SqliteConnectorConfig)
    postgres: PostgresConnectorConfig = field(default_factory=PostgresConnectorConfig)
    mysql: MySqlConnectorConfig = field(default_factory=MySqlConnectorConfig)
    mongodb: MongoConnectorConfig = field(default_factory=MongoConnectorConfig)
    dynamodb: DynamoDbConnectorConfig = field(default_factory=DynamoDbConnectorConfig)
    scylladb: ScyllaDbConnectorConfig = field(default_factory=ScyllaDbConnectorConfig)

    @classmethod
    def from_env(cls) -> ConnectorConfig:
        """Load configuration from environment variables.

        Raises:
            ConfigurationError: If the backend name is unknown
        """
        backend_str = os.getenv("ENTITY_STORAGE_CONNECTOR", "memory").lower()
        try:
            backend = ConnectorBackend(backend_str)
        except ValueError as err:
            choices = ", ".join(b.value for b in ConnectorBackend)
            raise ConfigurationError(
                f"Invalid ENTITY_STORAGE_CONNECTOR '{backend_str}'. Must be one of: {choices}"
            ) from err
        return cls(
            backend=backend,
            undefined_property_mode=UndefinedPropertyMode.from_str(
                os.getenv("ENTITY_STORAGE_UNDEFINED_PROPERTIES", "remove")
            ),
            file=FileConnectorConfig.from_env(),
            sqlite=SqliteConnectorConfig.from_env(),
            postgres=PostgresConnectorConfig.from_env(),
            mysql=MySqlConnectorConfig.from_env(),
            mongodb=MongoConnectorConfig.from_env(),
            dynamodb=DynamoDbConnectorConfig.from_env(),
            scylladb=ScyllaDbConnectorConfig.from_env(),
        )

    def for_container(self, container: str) -> ConnectorConfig:
        """The same backend settings, pointed at another table/collection.

        Used for the sync snapshot store which lives beside the entities.
        """
        file_dir = self.file.directory
        return replace(
            self,
            file=replace(self.file, directory=os.path.join(file_dir, container) if file_dir else ""),
            sqlite=replace(self.sqlite, table_name=container),
            postgres=replace(self.postgres, table_name=container),
            mysql=replace(self.mysql, table_name=container),
            mongodb=replace(self.mongodb, collection_name=container),
            dynamodb=replace(self.dynamodb, table_name=container),
            scylladb=replace(self.scylladb, table_name=container),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for blob storage.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        prefix: Key prefix for blobs
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "entity-storage"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    prefix: str = "blobs"
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "entity-storage"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            prefix=os.getenv("S3_BLOB_PREFIX", "blobs"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class BlobStorageConfig:
    """Blob storage configuration (change-sets and sync state).

    Attributes:
        backend: memory, file or s3
        directory: Directory for the file backend
        s3: S3 settings for the s3 backend
    """

    backend: BlobBackend = BlobBackend.MEMORY
    directory: str = ""
    s3: S3Config = field(default_factory=S3Config)

    @classmethod
    def from_env(cls) -> BlobStorageConfig:
        """Load configuration from environment variables.

        Raises:
            ConfigurationError: If the backend name is unknown
        """
        backend_str = os.getenv("ENTITY_STORAGE_BLOB_BACKEND", "memory").lower()
        try:
            backend = BlobBackend(backend_str)
        except ValueError as err:
            raise ConfigurationError(f"Invalid ENTITY_STORAGE_BLOB_BACKEND '{backend_str}'") from err
        return cls(
            backend=backend,
            directory=os.getenv("ENTITY_STORAGE_BLOB_DIR", ""),
            s3=S3Config.from_env(),
        )


@dataclass(frozen=True)
class VerifiableStorageConfig:
    """Verifiable storage configuration (the sync pointer).

    Attributes:
        backend: memory or file
        path: JSON document path for the file backend
    """

    backend: VerifiableBackend = VerifiableBackend.MEMORY
    path: str = ""

    @classmethod
    def from_env(cls) -> VerifiableStorageConfig:
        """Load configuration from environment variables.

        Raises:
            ConfigurationError: If the backend name is unknown
        """
        backend_str = os.getenv("ENTITY_STORAGE_VERIFIABLE_BACKEND", "memory").lower()
        try:
            backend = VerifiableBackend(backend_str)
        except ValueError as err:
            raise ConfigurationError(
                f"Invalid ENTITY_STORAGE_VERIFIABLE_BACKEND '{backend_str}'"
            ) from err
        return cls(backend=backend, path=os.getenv("ENTITY_STORAGE_VERIFIABLE_PATH", ""))


@dataclass(frozen=True)
class IdentityConfig:
    """Node identity and signing key configuration.

    Attributes:
        node_identity: Identity of this node (stamped on entities and change-sets)
        key_store_path: JSON key store; None keeps keys in memory only
    """

    node_identity: str | None = None
    key_store_path: str | None = None

    @classmethod
    def from_env(cls) -> IdentityConfig:
        """Load configuration from environment variables."""
        return cls(
            node_identity=os.getenv("ENTITY_STORAGE_NODE_IDENTITY"),
            key_store_path=os.getenv("ENTITY_STORAGE_KEY_STORE"),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Synchronisation engine configuration.

    Attributes:
        enabled: Whether the node runs the sync engine
        verifiable_storage_key: Key of the shared sync pointer
        decentralised_storage_method_id: Verification method used to sign change-sets
        entity_update_interval_ms: Interval between pull/push cycles
        consolidation_interval_ms: Interval between consolidations (authoritative only)
        consolidation_batch_size: Entities per consolidation change-set
        is_authoritative_node: Whether this node advances the sync pointer
        remote_sync_endpoint: Trusted node base URL for followers
        io_timeout_seconds: Deadline for one sync iteration's I/O
        max_retries: Retries for push/pull I/O
        retry_base_delay_ms: First backoff delay, doubled per retry
        allowed_node_identities: Nodes allowed to push to this trusted node, empty for any
    """

    enabled: bool = False
    verifiable_storage_key: str | None = None
    decentralised_storage_method_id: str = "decentralised-storage-assertion"
    entity_update_interval_ms: int = 300000
    consolidation_interval_ms: int = 300000
    consolidation_batch_size: int = 1000
    is_authoritative_node: bool = False
    remote_sync_endpoint: str | None = None
    io_timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_base_delay_ms: int = 200
    allowed_node_identities: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("SYNC_ENABLED", "false"),
            verifiable_storage_key=os.getenv("SYNC_VERIFIABLE_STORAGE_KEY"),
            decentralised_storage_method_id=os.getenv(
                "SYNC_METHOD_ID", "decentralised-storage-assertion"
            ),
            entity_update_interval_ms=int(os.getenv("SYNC_ENTITY_UPDATE_INTERVAL_MS", "300000")),
            consolidation_interval_ms=int(os.getenv("SYNC_CONSOLIDATION_INTERVAL_MS", "300000")),
            consolidation_batch_size=int(os.getenv("SYNC_CONSOLIDATION_BATCH_SIZE", "1000")),
            is_authoritative_node=_env_bool("SYNC_AUTHORITATIVE", "false"),
            remote_sync_endpoint=os.getenv("SYNC_REMOTE_ENDPOINT"),
            io_timeout_seconds=float(os.getenv("SYNC_IO_TIMEOUT_SECONDS", "30")),
            max_retries=int(os.getenv("SYNC_MAX_RETRIES", "3")),
            retry_base_delay_ms=int(os.getenv("SYNC_RETRY_BASE_DELAY_MS", "200")),
            allowed_node_identities=tuple(
                identity.strip()
                for identity in os.getenv("SYNC_ALLOWED_NODE_IDENTITIES", "").split(",")
                if identity.strip()
            ),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class NodeConfig:
    """Complete node configuration.

    Attributes:
        schema_file: JSON document describing the entity schema
        include_user_identity: Partition entities by user identity
        include_node_identity: Partition entities by node identity
        connector: Entity storage backend
        blob: Blob storage (change-sets)
        verifiable: Verifiable storage (sync pointer)
        identity: Node identity and keys
        sync: Synchronisation engine
        observability: Logging
    """

    schema_file: str | None = None
    include_user_identity: bool = True
    include_node_identity: bool = True
    connector: ConnectorConfig = field(default_factory=ConnectorConfig)
    blob: BlobStorageConfig = field(default_factory=BlobStorageConfig)
    verifiable: VerifiableStorageConfig = field(default_factory=VerifiableStorageConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> NodeConfig:
        """Load complete configuration from environment variables.

        Raises:
            ConfigurationError: If required configuration is missing or invalid.
        """
        config = cls(
            schema_file=os.getenv("ENTITY_STORAGE_SCHEMA_FILE"),
            include_user_identity=_env_bool("ENTITY_STORAGE_INCLUDE_USER_IDENTITY", "true"),
            include_node_identity=_env_bool("ENTITY_STORAGE_INCLUDE_NODE_IDENTITY", "true"),
            connector=ConnectorConfig.from_env(),
            blob=BlobStorageConfig.from_env(),
            verifiable=VerifiableStorageConfig.from_env(),
            identity=IdentityConfig.from_env(),
            sync=SyncConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        if not self.schema_file:
            raise ConfigurationError("ENTITY_STORAGE_SCHEMA_FILE is required")
        if self.blob.backend == BlobBackend.FILE and not self.blob.directory:
            raise ConfigurationError(
                "ENTITY_STORAGE_BLOB_DIR is required when ENTITY_STORAGE_BLOB_BACKEND=file"
            )
        if self.blob.backend == BlobBackend.S3 and not self.blob.s3.bucket:
            raise ConfigurationError("S3_BUCKET is required when ENTITY_STORAGE_BLOB_BACKEND=s3")
        if self.verifiable.backend == VerifiableBackend.FILE and not self.verifiable.path:
            raise ConfigurationError(
                "ENTITY_STORAGE_VERIFIABLE_PATH is required when the verifiable backend is file"
            )

        if self.sync.enabled:
            if not self.sync.verifiable_storage_key:
                raise ConfigurationError(
                    "SYNC_VERIFIABLE_STORAGE_KEY is required when SYNC_ENABLED=true"
                )
            if not self.identity.node_identity:
                raise ConfigurationError(
                    "ENTITY_STORAGE_NODE_IDENTITY is required when SYNC_ENABLED=true"
                )
            if not self.sync.is_authoritative_node and not self.sync.remote_sync_endpoint:
                raise ConfigurationError(
                    "SYNC_REMOTE_ENDPOINT is required on a non-authoritative node"
                )
            if self.blob.backend == BlobBackend.MEMORY:
                logger.warning(
                    "Sync is enabled with in-memory blob storage; "
                    "change-sets are not shared with other nodes"
                )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Node configuration loaded",
            extra={
                "schema_file": self.schema_file,
                "connector": self.connector.backend.value,
                "undefined_property_mode": self.connector.undefined_property_mode.value,
                "postgres_host": self.connector.postgres.host
                if self.connector.backend == ConnectorBackend.POSTGRES
                else None,
                "mysql_host": self.connector.mysql.host
                if self.connector.backend == ConnectorBackend.MYSQL
                else None,
                "mongo_database": self.connector.mongodb.database
                if self.connector.backend == ConnectorBackend.MONGODB
                else None,
                "scylladb_hosts": list(self.connector.scylladb.hosts)
                if self.connector.backend == ConnectorBackend.SCYLLADB
                else None,
                "blob_backend": self.blob.backend.value,
                "s3_bucket": self.blob.s3.bucket if self.blob.backend == BlobBackend.S3 else None,
                "verifiable_backend": self.verifiable.backend.value,
                "node_identity": self.identity.node_identity,
                "sync_enabled": self.sync.enabled,
                "sync_authoritative": self.sync.is_authoritative_node,
                "sync_remote_endpoint": self.sync.remote_sync_endpoint,
                "log_level": self.observability.log_level,
            },
        )
