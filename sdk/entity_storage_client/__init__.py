"""
Entity Storage Python SDK - REST client for entity storage nodes.

Example:
    >>> from entity_storage_client import EntityStorageClient
    >>>
    >>> async with EntityStorageClient("http://localhost:8080") as client:
    ...     await client.set({"id": "1", "value1": "aaa"}, user_identity="did:user:alice")
    ...     page = await client.query(order_by="id", page_size=10)

Invariants:
    - Errors carry the server error name and status
    - get() returns None when the entity does not exist

Version: 1.0.0
"""

__version__ = "1.0.0"

from .client import EntityStorageClient, QueryPage
from .errors import (
    ConnectionError,
    EntityStorageClientError,
    NotFoundError,
    ServiceUnavailableError,
    SignatureError,
    UnsupportedQueryError,
    ValidationError,
)

__all__ = [
    # Version
    "__version__",
    # Client
    "EntityStorageClient",
    "QueryPage",
    # Errors
    "EntityStorageClientError",
    "ConnectionError",
    "ValidationError",
    "NotFoundError",
    "SignatureError",
    "UnsupportedQueryError",
    "ServiceUnavailableError",
]
