"""
Error types for the Entity Storage client.

This module defines all exception types raised by the client:
- EntityStorageClientError: Base exception
- ConnectionError: Server unreachable or timed out
- ValidationError: The server rejected the request (400)
- NotFoundError: The entity does not exist in the caller's scope (404)
- SignatureError: A pushed change-set was rejected (401)
- UnsupportedQueryError: The query cannot run on the server's backend (422)
- ServiceUnavailableError: The server's backend is unavailable (503)

Invariants:
    - All errors inherit from EntityStorageClientError
    - ``name`` carries the server error class from the response envelope
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EntityStorageClientError(Exception):
    """Base exception for all Entity Storage client errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context (the envelope properties)
        name: Server-side error name, if the server answered
        status_code: HTTP status, if the server answered
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ENTITY_STORAGE_CLIENT_ERROR"
        self.details = details or {}
        self.name = name
        self.status_code = status_code


class ConnectionError(EntityStorageClientError):
    """Failed to reach the Entity Storage server."""

    def __init__(self, message: str, address: Optional[str] = None) -> None:
        super().__init__(message, code="CONNECTION_ERROR", details={"address": address})
        self.address = address


class ValidationError(EntityStorageClientError):
    """The server rejected the request arguments."""


class NotFoundError(EntityStorageClientError):
    """The entity does not exist."""


class SignatureError(EntityStorageClientError):
    """A change-set proof was rejected."""


class UnsupportedQueryError(EntityStorageClientError):
    """The query cannot be expressed on the server's backend."""


class ServiceUnavailableError(EntityStorageClientError):
    """The server's storage backend is unavailable; retry later."""


_STATUS_ERRORS: Dict[int, tuple] = {
    400: (ValidationError, "VALIDATION_ERROR"),
    401: (SignatureError, "SIGNATURE_INVALID"),
    404: (NotFoundError, "NOT_FOUND"),
    422: (UnsupportedQueryError, "UNSUPPORTED_QUERY"),
    503: (ServiceUnavailableError, "SERVICE_UNAVAILABLE"),
}


def error_from_response(status_code: int, envelope: Dict[str, Any]) -> EntityStorageClientError:
    """Build the client error matching an error response.

    Args:
        status_code: HTTP status of the response
        envelope: Decoded ``{name, message, properties?}`` body (may be empty)
    """
    error_type, code = _STATUS_ERRORS.get(status_code, (EntityStorageClientError, "SERVER_ERROR"))
    return error_type(
        envelope.get("message") or f"HTTP {status_code}",
        code=code,
        details=envelope.get("properties") or {},
        name=envelope.get("name"),
        status_code=status_code,
    )
