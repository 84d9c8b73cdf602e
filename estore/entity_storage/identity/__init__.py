"""Node identity and change-set proofs."""

from .base import IdentityConnector, canonical_json, split_verification_method
from .ed25519 import Ed25519IdentityConnector

__all__ = [
    "Ed25519IdentityConnector",
    "IdentityConnector",
    "canonical_json",
    "split_verification_method",
]
