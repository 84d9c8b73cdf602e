"""
File entity storage connector.

Stores entities as JSON documents in a single directory:
- ``<partition>.json``: one document per logical partition, mapping primary
  key to entity; the partition is a stable hash of the primary key
- ``index.json``: the partition list and one map per secondary index
  (index value -> primary keys)

Invariants:
    - Every write replaces files atomically (temp file + rename)
    - The secondary index map is rewritten together with the partition
    - Partition assignment is stable across processes (sha256, not hash())
    - Queries load every partition and use the reference evaluator

How to change safely:
    - Changing partition_count requires rewriting existing directories
    - Keep document layout append-only so older directories stay readable
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import os
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..conditions.evaluator import check_condition, pick, sort_entities
from ..conditions.model import (
    Condition,
    SortProperty,
    condition_from_dict,
    normalize_comparators,
    sort_from_dict,
)
from ..errors import (
    BackendUnavailableError,
    ConfigurationError,
    LookupFailedError,
    QueryFailedError,
    RemoveFailedError,
    WriteFailedError,
)
from ..schema.types import EntitySchema
from .base import (
    QueryResult,
    UndefinedPropertyMode,
    bootstrap_logger,
    check_secondary_index,
    comparators_match,
    parse_offset_cursor,
    prepare_entity,
    primary_key_of,
    resolve_page_size,
)

if TYPE_CHECKING:
    from ..config import FileConnectorConfig

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"


class FileEntityStorageConnector:
    """Directory-of-JSON implementation of EntityStorageConnector.

    Thread safety:
        A single asyncio lock serialises every read-modify-write of the
        partition and index documents. File I/O runs in the default executor.

    Example:
        >>> connector = FileEntityStorageConnector(schema, FileConnectorConfig(directory="/tmp/items"))
        >>> await connector.bootstrap()
    """

    def __init__(
        self,
        schema: EntitySchema,
        config: FileConnectorConfig,
        undefined_mode: UndefinedPropertyMode = UndefinedPropertyMode.REMOVE,
    ) -> None:
        """Initialize the connector.

        Args:
            schema: Schema of the stored entities
            config: Directory and partitioning settings
            undefined_mode: Treatment of undefined values on write

        Raises:
            ConfigurationError: If the directory is missing or partitions < 1
        """
        if not config.directory:
            raise ConfigurationError(
                "File connector requires a directory", details={"schema": schema.name}
            )
        if config.partition_count < 1:
            raise ConfigurationError("File connector partition_count must be at least 1")
        self._schema = schema
        self._config = config
        self._undefined_mode = undefined_mode
        self._directory = Path(config.directory)
        self._lock = asyncio.Lock()

    def get_schema(self) -> EntitySchema:
        return self._schema

    # File helpers (run in the executor)

    def _partition_of(self, id: Any) -> str:
        digest = hashlib.sha256(str(id).encode("utf-8")).digest()
        return f"partition-{int.from_bytes(digest[:4], 'big') % self._config.partition_count}"

    def _read_json(self, name: str, default: Any) -> Any:
        path = self._directory / name
        if not path.exists():
            return default
        with open(path, encoding="utf-8") as handle:
            return json.load(handle)

    def _write_json(self, name: str, data: Any) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self._directory, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, separators=(",", ":"))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._directory / name)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _empty_index(self) -> dict[str, Any]:
        return {
            "partitions": [],
            "secondaryIndexes": {p.property: {} for p in self._schema.secondary_indexes},
        }

    def _ensure_directory(self) -> None:
        if not self._directory.is_dir():
            raise BackendUnavailableError(
                f"Directory '{self._directory}' does not exist",
                container=str(self._directory),
            )

    def _load_all(self) -> list[dict[str, Any]]:
        self._ensure_directory()
        index = self._read_json(INDEX_FILE, self._empty_index())
        entities: list[dict[str, Any]] = []
        for partition in index["partitions"]:
            entities.extend(self._read_json(f"{partition}.json", {}).values())
        return entities

    def _index_key(self, value: Any) -> str:
        return json.dumps(value, sort_keys=True)

    def _unindex(self, index: dict[str, Any], entity: dict[str, Any], key: str) -> None:
        for name, mapping in index["secondaryIndexes"].items():
            if name not in entity:
                continue
            value_key = self._index_key(entity[name])
            keys = [k for k in mapping.get(value_key, []) if k != key]
            if keys:
                mapping[value_key] = keys
            else:
                mapping.pop(value_key, None)

    def _reindex(self, index: dict[str, Any], entity: dict[str, Any], key: str) -> None:
        for name, mapping in index["secondaryIndexes"].items():
            if name in entity:
                mapping.setdefault(self._index_key(entity[name]), []).append(key)

    def _run(self, fn: Any, *args: Any) -> Any:
        return asyncio.get_running_loop().run_in_executor(None, fn, *args)

    # Contract

    async def bootstrap(self, logger_name: str | None = None) -> bool:
        """Create the directory and an empty index if they do not exist."""
        log = bootstrap_logger(logger_name, logger)
        directory = str(self._directory)
        try:
            if self._directory.is_dir():
                log.info("directoryExists", extra={"directory": directory})
            else:
                log.info("directoryCreating", extra={"directory": directory})
                self._directory.mkdir(parents=True, exist_ok=True)
            async with self._lock:
                if not (self._directory / INDEX_FILE).exists():
                    await self._run(self._write_json, INDEX_FILE, self._empty_index())
            return True
        except OSError as err:
            log.error(
                "directoryCreateFailed",
                extra={"directory": directory, "error": str(err)},
            )
            return False

    def _get_sync(self, id: Any, secondary_index: str | None) -> dict[str, Any] | None:
        self._ensure_directory()
        if secondary_index is None:
            partition = self._read_json(f"{self._partition_of(id)}.json", {})
            return partition.get(str(id))
        index = self._read_json(INDEX_FILE, self._empty_index())
        keys = index["secondaryIndexes"].get(secondary_index, {}).get(self._index_key(id), [])
        for key in keys:
            entity = self._read_json(f"{self._partition_of(key)}.json", {}).get(key)
            if entity is not None:
                return entity
        return None

    async def get(
        self,
        id: Any,
        secondary_index: str | None = None,
        conditions: Any = None,
    ) -> dict[str, Any] | None:
        check_secondary_index(self._schema, secondary_index)
        comparators = normalize_comparators(conditions)
        try:
            async with self._lock:
                entity = await self._run(self._get_sync, id, secondary_index)
        except BackendUnavailableError:
            raise
        except (OSError, ValueError) as err:
            raise LookupFailedError(id=str(id), container=str(self._directory), inner=err) from err
        if entity is None or not comparators_match(entity, comparators):
            return None
        return entity

    def _set_sync(self, entity: dict[str, Any], comparators: list) -> bool:
        self._ensure_directory()
        key = str(primary_key_of(self._schema, entity))
        partition_name = self._partition_of(key)
        partition = self._read_json(f"{partition_name}.json", {})
        existing = partition.get(key)
        if existing is not None and comparators and not comparators_match(existing, comparators):
            return False

        index = self._read_json(INDEX_FILE, self._empty_index())
        if existing is not None:
            self._unindex(index, existing, key)
        self._reindex(index, entity, key)
        if partition_name not in index["partitions"]:
            index["partitions"].append(partition_name)

        partition[key] = entity
        self._write_json(f"{partition_name}.json", partition)
        self._write_json(INDEX_FILE, index)
        return True

    async def set(self, entity: dict[str, Any], conditions: Any = None) -> None:
        prepared = prepare_entity(self._schema, entity, self._undefined_mode)
        comparators = normalize_comparators(conditions)
        id = primary_key_of(self._schema, prepared)
        try:
            async with self._lock:
                written = await self._run(self._set_sync, copy.deepcopy(prepared), comparators)
        except BackendUnavailableError:
            raise
        except (OSError, TypeError, ValueError) as err:
            raise WriteFailedError(id=str(id), container=str(self._directory), inner=err) from err
        if not written:
            logger.debug("Conditional set skipped", extra={"schema": self._schema.name, "id": id})

    def _remove_sync(self, id: Any, comparators: list) -> None:
        self._ensure_directory()
        key = str(id)
        partition_name = self._partition_of(key)
        partition = self._read_json(f"{partition_name}.json", {})
        existing = partition.get(key)
        if existing is None:
            return
        if comparators and not comparators_match(existing, comparators):
            return
        index = self._read_json(INDEX_FILE, self._empty_index())
        self._unindex(index, existing, key)
        del partition[key]
        self._write_json(f"{partition_name}.json", partition)
        self._write_json(INDEX_FILE, index)

    async def remove(self, id: Any, conditions: Any = None) -> None:
        comparators = normalize_comparators(conditions)
        try:
            async with self._lock:
                await self._run(self._remove_sync, id, comparators)
        except BackendUnavailableError:
            raise
        except (OSError, ValueError) as err:
            raise RemoveFailedError(id=str(id), container=str(self._directory), inner=err) from err

    async def query(
        self,
        conditions: Condition | None = None,
        sort_properties: Sequence[SortProperty] | None = None,
        properties: Sequence[str] | None = None,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> QueryResult:
        size = resolve_page_size(page_size)
        offset = parse_offset_cursor(cursor)
        condition = condition_from_dict(conditions)
        try:
            async with self._lock:
                entities = await self._run(self._load_all)
        except BackendUnavailableError:
            raise
        except (OSError, ValueError) as err:
            raise QueryFailedError(container=str(self._directory), inner=err) from err

        matched = [e for e in entities if check_condition(e, condition)]
        # Partitions do not preserve insertion order; default to primary key order
        sorts = sort_from_dict(sort_properties) or [SortProperty(self._schema.primary_key.property)]
        ordered = sort_entities(matched, sorts)
        page = ordered[offset:offset + size]
        next_offset = offset + size
        return QueryResult(
            entities=[pick(e, properties) for e in page],
            cursor=str(next_offset) if next_offset < len(ordered) else None,
        )

    async def close(self) -> None:
        """Nothing to release; every operation opens its own files."""
