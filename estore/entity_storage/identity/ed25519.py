"""
Ed25519 identity connector.

Holds private keys for local identities and a directory of public keys for
remote ones. Proofs follow the DataIntegrityProof layout:

    {
        "type": "DataIntegrityProof",
        "cryptosuite": "eddsa-jcs-2022",
        "created": "<iso timestamp>",
        "verificationMethod": "<identity>#<method id>",
        "proofPurpose": "assertionMethod",
        "proofValue": "<base64url signature>"
    }

The signature covers sha256(canonical proof options) followed by
sha256(canonical document without its "proof" member).

Invariants:
    - Private keys never leave the key store
    - An unknown verification method fails verification (False)

How to change safely:
    - The signed bytes are shared by every node; a change needs a new
      cryptosuite name so older proofs stay verifiable
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from ..errors import GuardError
from .base import canonical_json, split_verification_method

logger = logging.getLogger(__name__)

PROOF_TYPE = "DataIntegrityProof"
CRYPTOSUITE = "eddsa-jcs-2022"
PROOF_PURPOSE = "assertionMethod"


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _raw_public(key: Ed25519PublicKey) -> bytes:
    return key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


def _raw_private(key: Ed25519PrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )


def _signing_input(document: dict[str, Any], options: dict[str, Any]) -> bytes:
    unsigned = {k: v for k, v in document.items() if k != "proof"}
    return (
        hashlib.sha256(canonical_json(options)).digest()
        + hashlib.sha256(canonical_json(unsigned)).digest()
    )


class Ed25519IdentityConnector:
    """Ed25519 implementation of IdentityConnector.

    Keys are kept in memory, and persisted to a JSON key store when
    key_store_path is given:

        {"private": {"<identity>#<id>": "<b64url seed>"},
         "public": {"<identity>#<id>": "<b64url key>"}}

    Thread safety:
        Key store mutations are guarded by a threading lock; signing and
        verification are lock-free.

    Example:
        >>> identity = Ed25519IdentityConnector()
        >>> identity.create_key("did:node:a", "node-signing")
        >>> proof = await identity.create_proof("did:node:a", "node-signing", {"x": 1})
        >>> await identity.verify_proof({"x": 1}, proof)
        True
    """

    def __init__(self, key_store_path: str | None = None) -> None:
        self._path = Path(key_store_path) if key_store_path else None
        self._private: dict[str, Ed25519PrivateKey] = {}
        self._public: dict[str, Ed25519PublicKey] = {}
        self._lock = threading.Lock()
        if self._path is not None and self._path.exists():
            self._load()

    def _load(self) -> None:
        with open(self._path, encoding="utf-8") as handle:
            document = json.load(handle)
        for method, seed in document.get("private", {}).items():
            key = Ed25519PrivateKey.from_private_bytes(_b64url_decode(seed))
            self._private[method] = key
            self._public[method] = key.public_key()
        for method, raw in document.get("public", {}).items():
            self._public.setdefault(method, Ed25519PublicKey.from_public_bytes(_b64url_decode(raw)))
        logger.info(
            "Key store loaded",
            extra={"path": str(self._path), "local_keys": len(self._private)},
        )

    def _save(self) -> None:
        if self._path is None:
            return
        document = {
            "private": {m: _b64url_encode(_raw_private(k)) for m, k in self._private.items()},
            "public": {m: _b64url_encode(_raw_public(k)) for m, k in self._public.items()},
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".keys.", suffix=".tmp")
        try:
            os.chmod(tmp_path, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    @staticmethod
    def _method(identity: str, verification_method: str) -> str:
        if "#" in verification_method:
            return verification_method
        return f"{identity}#{verification_method}"

    def create_key(self, identity: str, method_id: str) -> str:
        """Create (or return the existing) signing key of a local identity.

        Returns:
            The base64url raw public key, for distribution to other nodes
        """
        if not identity:
            raise GuardError("Ed25519IdentityConnector", "identity")
        method = self._method(identity, method_id)
        with self._lock:
            key = self._private.get(method)
            if key is None:
                key = Ed25519PrivateKey.generate()
                self._private[method] = key
                self._public[method] = key.public_key()
                self._save()
                logger.info("Signing key created", extra={"verification_method": method})
        return _b64url_encode(_raw_public(key.public_key()))

    def add_public_key(self, verification_method: str, public_key: str) -> None:
        """Register the public key of a remote identity.

        Raises:
            GuardError: If the method or the key is malformed
        """
        split_verification_method(verification_method)
        try:
            key = Ed25519PublicKey.from_public_bytes(_b64url_decode(public_key))
        except (ValueError, binascii.Error) as err:
            raise GuardError(
                "Ed25519IdentityConnector", "publicKey", "Invalid Ed25519 public key"
            ) from err
        with self._lock:
            self._public[verification_method] = key
            self._save()

    def get_public_key(self, verification_method: str) -> str | None:
        key = self._public.get(verification_method)
        return _b64url_encode(_raw_public(key)) if key is not None else None

    async def create_proof(
        self,
        identity: str,
        verification_method: str,
        document: dict[str, Any],
    ) -> dict[str, Any]:
        method = self._method(identity, verification_method)
        key = self._private.get(method)
        if key is None:
            raise GuardError(
                "Ed25519IdentityConnector",
                "verificationMethod",
                f"No signing key for '{method}'",
            )
        options = {
            "type": PROOF_TYPE,
            "cryptosuite": CRYPTOSUITE,
            "created": datetime.now(timezone.utc).isoformat(),
            "verificationMethod": method,
            "proofPurpose": PROOF_PURPOSE,
        }
        signature = key.sign(_signing_input(document, options))
        return {**options, "proofValue": _b64url_encode(signature)}

    async def verify_proof(self, document: dict[str, Any], proof: dict[str, Any]) -> bool:
        if not isinstance(proof, dict) or not isinstance(document, dict):
            return False
        if proof.get("type") != PROOF_TYPE or proof.get("cryptosuite") != CRYPTOSUITE:
            return False
        key = self._public.get(proof.get("verificationMethod") or "")
        if key is None:
            logger.warning(
                "Unknown verification method",
                extra={"verification_method": proof.get("verificationMethod")},
            )
            return False
        options = {k: v for k, v in proof.items() if k != "proofValue"}
        try:
            signature = _b64url_decode(str(proof.get("proofValue") or ""))
            key.verify(signature, _signing_input(document, options))
        except (InvalidSignature, ValueError, binascii.Error):
            return False
        return True
