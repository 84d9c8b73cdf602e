"""
Entity Storage node - Main entry point.

This module starts a node with all components:
- Entity connector (backend chosen by configuration)
- Entity storage service and REST API
- Synchronisation engine (optional): snapshot store, blob storage,
  verifiable sync pointer, node signing key, and either the trusted push
  surface (authoritative node) or the HTTP push client (follower)

Usage:
    entity-storage-node
    python -m estore.entity_storage.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Connectors are bootstrapped before the API accepts requests
    - Graceful shutdown stops the sync loops before closing connectors
    - Schemas are registered, then the registry is frozen, before any
      connector is created

How to change safely:
    - Add new components with enable/disable flags
    - Keep the shutdown order the reverse of the startup order
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from typing import Any

import json_log_formatter

from .api import ApiSettings, run_api
from .blob import BlobStorage, create_blob_storage
from .config import NodeConfig
from .connectors import EntityStorageConnector, create_connector
from .errors import ConfigurationError
from .identity import Ed25519IdentityConnector
from .schema import EntitySchema, RegistryFrozenError, freeze_registry, get_registry
from .service import EntityStorageService
from .sync import (
    SYNC_SNAPSHOT_ENTRY_SCHEMA,
    HttpTrustedSyncClient,
    RemoteSyncStateHelper,
    SynchronisedEntityStorageConnector,
    SynchronisedStorageService,
    TrustedSynchronisedStorageService,
)
from .sync.change_set import ChangeSetHelper
from .verifiable import create_verifiable_storage

logger = logging.getLogger(__name__)

SNAPSHOT_CONTAINER = "sync_snapshot_entries"


def setup_logging(config: NodeConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Node configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    for name in ("botocore", "aiobotocore", "asyncpg", "motor", "httpx", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


def load_schema(path: str) -> EntitySchema:
    """Load and register the entity schema described by a JSON file.

    Raises:
        ConfigurationError: If the file cannot be read or is not a schema
    """
    try:
        with open(path, encoding="utf-8") as handle:
            document = json.load(handle)
        schema = EntitySchema.from_dict(document)
    except (OSError, ValueError, KeyError) as err:
        raise ConfigurationError(
            f"Cannot load entity schema from '{path}': {err}", details={"path": path}
        ) from err
    return get_registry().register(schema)


class Node:
    """Entity Storage node orchestrator.

    Manages the lifecycle of all node components.

    Attributes:
        config: Node configuration
        connector: Connector the service writes through
        service: Entity storage service
        sync_service: Sync engine, None when sync is disabled
        trusted_sync: Trusted push surface on an authoritative node

    Example:
        >>> node = Node(config)
        >>> await node.start()
        >>> await node.service.set({"id": "1"}, user_identity="u", node_identity="n")
        >>> await node.stop()
    """

    def __init__(
        self,
        config: NodeConfig | None = None,
        schema: EntitySchema | None = None,
        api_settings: ApiSettings | None = None,
    ) -> None:
        """Initialize the node.

        Args:
            config: Node configuration (loaded from env if not provided)
            schema: Entity schema (loaded from config.schema_file if not provided)
            api_settings: REST API settings (loaded from env if not provided)
        """
        self.config = config or NodeConfig.from_env()
        self.schema = schema
        self.api_settings = api_settings
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Components (initialized in start())
        self.backend: EntityStorageConnector | None = None
        self.connector: EntityStorageConnector | None = None
        self.service: EntityStorageService | None = None
        self.snapshot_connector: EntityStorageConnector | None = None
        self.blob_storage: BlobStorage | None = None
        self.identity: Ed25519IdentityConnector | None = None
        self.sync_service: SynchronisedStorageService | None = None
        self.trusted_sync: TrustedSynchronisedStorageService | None = None
        self._push_client: HttpTrustedSyncClient | None = None

    async def start(self) -> None:
        """Create, bootstrap and start every component."""
        if self._running:
            logger.warning("Node already running")
            return

        logger.info("Starting entity storage node")
        self.config.log_config()

        try:
            if self.schema is None:
                if not self.config.schema_file:
                    raise ConfigurationError("An entity schema is required")
                self.schema = load_schema(self.config.schema_file)
            else:
                self.schema = get_registry().register(self.schema)

            try:
                fingerprint = freeze_registry()
                logger.info("Schema registry frozen", extra={"fingerprint": fingerprint})
            except RegistryFrozenError:
                logger.warning("Schema registry already frozen")

            self.backend = create_connector(self.config.connector, self.schema)
            if not await self.backend.bootstrap(__name__):
                raise ConfigurationError(
                    "Entity connector bootstrap failed",
                    details={"backend": self.config.connector.backend.value},
                )
            self.connector = self.backend

            if self.config.sync.enabled:
                await self._start_sync()

            self.service = EntityStorageService(
                self.connector,
                include_user_identity=self.config.include_user_identity,
                include_node_identity=self.config.include_node_identity,
            )

            self._running = True
            logger.info("Entity storage node started", extra={"schema": self.schema.name})

        except Exception as e:
            logger.error(f"Node startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    async def _start_sync(self) -> None:
        sync = self.config.sync
        node_identity = self.config.identity.node_identity
        if not node_identity:
            raise ConfigurationError("A node identity is required to synchronise")

        self.snapshot_connector = create_connector(
            self.config.connector.for_container(SNAPSHOT_CONTAINER), SYNC_SNAPSHOT_ENTRY_SCHEMA
        )
        if not await self.snapshot_connector.bootstrap(__name__):
            raise ConfigurationError("Sync snapshot connector bootstrap failed")

        self.blob_storage = create_blob_storage(self.config.blob)
        verifiable = create_verifiable_storage(self.config.verifiable)
        self.identity = Ed25519IdentityConnector(self.config.identity.key_store_path)
        public_key = self.identity.create_key(node_identity, sync.decentralised_storage_method_id)
        logger.info(
            "Node signing key ready",
            extra={
                "verification_method": f"{node_identity}#{sync.decentralised_storage_method_id}",
                "public_key": public_key,
            },
        )

        change_sets = ChangeSetHelper(
            self.backend, self.blob_storage, self.identity, sync.decentralised_storage_method_id
        )
        remote_state = RemoteSyncStateHelper(
            self.backend, self.blob_storage, verifiable, change_sets
        )

        trusted_component: Any
        if sync.is_authoritative_node:
            self.trusted_sync = TrustedSynchronisedStorageService(
                self.backend,
                self.blob_storage,
                verifiable,
                self.identity,
                sync,
                allowed_identities=sync.allowed_node_identities or None,
                remote_state=remote_state,
            )
            trusted_component = self.trusted_sync
        else:
            self._push_client = HttpTrustedSyncClient(
                sync.remote_sync_endpoint or "", timeout_seconds=sync.io_timeout_seconds
            )
            trusted_component = self._push_client

        self.sync_service = SynchronisedStorageService(
            self.backend,
            self.snapshot_connector,
            self.blob_storage,
            verifiable,
            self.identity,
            sync,
            trusted_component=trusted_component,
            remote_state=remote_state,
        )
        self.connector = SynchronisedEntityStorageConnector(self.backend, self.sync_service)
        await self.sync_service.start(node_identity)

    async def stop(self) -> None:
        """Stop the node gracefully."""
        if not self._running:
            return

        logger.info("Stopping entity storage node")

        if self.sync_service:
            await self.sync_service.stop()

        if self._push_client:
            await self._push_client.close()

        close_blob = getattr(self.blob_storage, "close", None)
        if close_blob is not None:
            await close_blob()

        for connector in (self.snapshot_connector, self.backend):
            if connector is not None:
                await connector.close()

        self._running = False
        logger.info("Entity storage node stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    async def run(self) -> None:
        """Start the node, serve the REST API and wait for shutdown."""
        await self.start()
        api_task = asyncio.create_task(run_api(self, self.api_settings))
        shutdown_task = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({api_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (api_task, shutdown_task):
                task.cancel()
            await asyncio.gather(api_task, shutdown_task, return_exceptions=True)


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = NodeConfig.from_env()
    except (ConfigurationError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create node
    node = Node(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        node.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run node
    try:
        loop.run_until_complete(node.run())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(node.stop())
        loop.close()


if __name__ == "__main__":
    main()
