"""Tamper-evident key/value storage holding the sync pointer."""

from .base import (
    VerifiableItem,
    VerifiableStorage,
    create_verifiable_storage,
    next_revision,
    verify_chain,
)
from .file import FileVerifiableStorage
from .memory import MemoryVerifiableStorage

__all__ = [
    "FileVerifiableStorage",
    "MemoryVerifiableStorage",
    "VerifiableItem",
    "VerifiableStorage",
    "create_verifiable_storage",
    "next_revision",
    "verify_chain",
]
