"""Entity storage service layer (identity scoping over a connector)."""

from .entity_storage_service import (
    NODE_IDENTITY_PROPERTY,
    USER_IDENTITY_PROPERTY,
    EntityStorageService,
)

__all__ = ["NODE_IDENTITY_PROPERTY", "USER_IDENTITY_PROPERTY", "EntityStorageService"]
