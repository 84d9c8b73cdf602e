"""
Entity Storage - schema-driven entity storage with decentralised synchronisation.

This package implements a uniform key/value-plus-query abstraction for typed
entities built on:
- An entity schema registry (primary key, secondary indexes, sort hints)
- A language-neutral condition model and a reference evaluator
- Pluggable connectors (memory, file, SQLite, PostgreSQL, MongoDB, DynamoDB)
- A shared query compiler for SQL-like backends
- A synchronisation engine exchanging signed change-sets through blob storage

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌──────────────────────┐
    │   Client    │────▶│  REST (API)  │────▶│ EntityStorageService │
    │   (SDK)     │     │   FastAPI    │     │ (identity filtering) │
    └─────────────┘     └──────────────┘     └──────────┬───────────┘
                                                        │
                                                        ▼
                        ┌─────────────────────────────────────────┐
                        │   SynchronisedEntityStorageConnector    │
                        └─────────────────────────────────────────┘
                                             │
                        ┌────────────────────┼────────────────────┐
                        │                    │                    │
                        ▼                    ▼                    ▼
                   ┌─────────┐        ┌────────────┐       ┌────────────┐
                   │Connector│        │ Change-sets│       │Sync pointer│
                   │(backend)│        │   (blobs)  │       │(verifiable)│
                   └─────────┘        └────────────┘       └────────────┘

Invariants:
    - Every entity schema has exactly one primary key
    - Connectors behave identically for get/set/remove/query
    - Change-sets are signed by the node that produced them
    - Only the authoritative node advances the sync pointer

How to change safely:
    - New connectors must pass the shared connector contract tests
    - Wire formats (change-sets, sync state) are append-only: add fields,
      never rename or remove them
    - Keep the in-memory connector as the behavioural reference

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
