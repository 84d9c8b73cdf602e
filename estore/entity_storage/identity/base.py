"""
Identity connector contract.

An identity connector signs JSON documents on behalf of a local identity
and verifies proofs produced by any known identity. A verification method
is written ``<identity>#<method id>``.

Invariants:
    - Documents are signed over their canonical encoding (sorted keys,
      compact separators, UTF-8), never over caller-formatted text
    - verify_proof() never raises for a bad proof; it returns False
"""

from __future__ import annotations

import json
from abc import abstractmethod
from typing import Any, Protocol, runtime_checkable

from ..errors import GuardError


def canonical_json(document: Any) -> bytes:
    """Canonical encoding used for hashing and signing."""
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def split_verification_method(verification_method: str) -> tuple[str, str]:
    """Split ``<identity>#<method id>`` into its parts.

    Raises:
        GuardError: If either part is missing
    """
    identity, separator, method_id = (verification_method or "").rpartition("#")
    if not separator or not identity or not method_id:
        raise GuardError(
            "IdentityConnector",
            "verificationMethod",
            f"Invalid verification method '{verification_method}'",
        )
    return identity, method_id


@runtime_checkable
class IdentityConnector(Protocol):
    """Protocol for signing and verifying document proofs."""

    @abstractmethod
    async def create_proof(
        self,
        identity: str,
        verification_method: str,
        document: dict[str, Any],
    ) -> dict[str, Any]:
        """Sign a document with a key of a local identity.

        Args:
            identity: The signing identity
            verification_method: Method id (or full ``identity#id``) of the key
            document: JSON object to sign (any "proof" member is ignored)

        Returns:
            A DataIntegrityProof dict

        Raises:
            GuardError: If the identity has no such key
        """
        ...

    @abstractmethod
    async def verify_proof(self, document: dict[str, Any], proof: dict[str, Any]) -> bool:
        """Whether proof is a valid signature of document by its verification method."""
        ...
