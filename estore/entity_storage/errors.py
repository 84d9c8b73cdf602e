"""
Error types for Entity Storage.

This module defines every exception raised by connectors, the service layer
and the synchronisation engine:
- EntityStorageError: Base exception
- GuardError: Caller-side contract violation
- ConfigurationError: Construction or bootstrap precondition failed
- BackendUnavailableError: Store unreachable or container/table missing
- LookupFailedError / WriteFailedError / RemoveFailedError / QueryFailedError:
  Operational failures wrapping the backend cause
- UnsupportedComparisonError / SortNotIndexedError: Query not expressible
- UndefinedPropertyError: Strict-mode undefined value on write
- SignatureInvalidError: Change-set proof did not verify
- NotFoundError: Entity (or collaborator record) does not exist

Invariants:
    - All errors inherit from EntityStorageError
    - The wrapped backend cause is kept in ``inner`` and chained with ``from``
    - A conditional write whose guard does not match is never an error

How to change safely:
    - Add new error kinds as subclasses with their own ``code``
    - Never change an existing ``code``, clients match on it
"""

from __future__ import annotations

import traceback
from typing import Any


class EntityStorageError(Exception):
    """Base exception for all Entity Storage errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context (ids, container names)
        inner: The wrapped cause, if any
        retryable: Whether a caller may retry the operation
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        inner: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ENTITY_STORAGE_ERROR"
        self.details = details or {}
        self.inner = inner

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_envelope(self, include_stack: bool = False) -> dict[str, Any]:
        """Render the error using the REST error envelope.

        Args:
            include_stack: Include a formatted traceback (debug only)

        Returns:
            Dict with name, message and optional properties/inner/stack
        """
        envelope: dict[str, Any] = {"name": self.name, "message": self.message}
        if self.details:
            envelope["properties"] = self.details
        if self.inner is not None:
            if isinstance(self.inner, EntityStorageError):
                envelope["inner"] = self.inner.to_envelope(include_stack)
            else:
                envelope["inner"] = {"name": type(self.inner).__name__, "message": str(self.inner)}
        if include_stack and self.__traceback__ is not None:
            envelope["stack"] = "".join(traceback.format_tb(self.__traceback__))
        return envelope


class GuardError(EntityStorageError, ValueError):
    """A required argument is missing or has the wrong shape.

    Raised immediately, never retried.
    """

    def __init__(self, source: str, argument: str, message: str | None = None) -> None:
        super().__init__(
            message or f"{source}: '{argument}' is required",
            code="GUARD_FAILURE",
            details={"source": source, "argument": argument},
        )
        self.source = source
        self.argument = argument


class EntityValidationError(GuardError):
    """An entity does not satisfy its schema."""

    def __init__(self, schema: str, errors: list[str]) -> None:
        super().__init__(schema, "entity", f"Entity does not match schema '{schema}': {errors}")
        self.code = "ENTITY_INVALID"
        self.details = {"schema": schema, "errors": errors}
        self.errors = errors


class ConfigurationError(EntityStorageError):
    """Construction or bootstrap precondition failed."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_INVALID", details=details)


class BackendUnavailableError(EntityStorageError):
    """The backend is unreachable, or the container/table does not exist."""

    retryable = True

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        container: str | None = None,
        inner: BaseException | None = None,
    ) -> None:
        super().__init__(
            message,
            code="BACKEND_UNAVAILABLE",
            details={"operation": operation, "container": container},
            inner=inner,
        )


class _OperationFailedError(EntityStorageError):
    """Common shape for operational failures."""

    retryable = True
    operation = "operation"
    error_code = "OPERATION_FAILED"

    def __init__(
        self,
        message: str | None = None,
        id: str | None = None,
        container: str | None = None,
        inner: BaseException | None = None,
    ) -> None:
        details: dict[str, Any] = {"operation": self.operation}
        if id is not None:
            details["id"] = id
        if container is not None:
            details["container"] = container
        super().__init__(
            message or f"{self.operation} failed" + (f" for '{id}'" if id else ""),
            code=self.error_code,
            details=details,
            inner=inner,
        )
        self.id = id


class LookupFailedError(_OperationFailedError):
    """A get operation failed in the backend."""

    operation = "get"
    error_code = "LOOKUP_FAILED"


class WriteFailedError(_OperationFailedError):
    """A set operation failed in the backend."""

    operation = "set"
    error_code = "WRITE_FAILED"


class RemoveFailedError(_OperationFailedError):
    """A remove operation failed in the backend."""

    operation = "remove"
    error_code = "REMOVE_FAILED"


class QueryFailedError(_OperationFailedError):
    """A query operation failed in the backend."""

    operation = "query"
    error_code = "QUERY_FAILED"


class UnsupportedComparisonError(EntityStorageError):
    """The comparison cannot be expressed on this backend."""

    def __init__(self, backend: str, comparison: str, property: str | None = None) -> None:
        super().__init__(
            f"Comparison '{comparison}' is not supported by {backend}",
            code="UNSUPPORTED_COMPARISON",
            details={"backend": backend, "comparison": comparison, "property": property},
        )


class SortNotIndexedError(EntityStorageError):
    """Sorting was requested on a property the backend cannot sort by."""

    def __init__(self, backend: str, property: str) -> None:
        super().__init__(
            f"Property '{property}' is not indexed and cannot be sorted on {backend}",
            code="SORT_NOT_INDEXED",
            details={"backend": backend, "property": property},
        )


class UndefinedPropertyError(EntityStorageError):
    """An undefined value was written while strict mode is enabled."""

    def __init__(self, schema: str, property: str) -> None:
        super().__init__(
            f"Property '{property}' of '{schema}' is undefined",
            code="UNDEFINED_PROPERTY",
            details={"schema": schema, "property": property},
        )


class SignatureInvalidError(EntityStorageError):
    """A received change-set failed proof verification."""

    def __init__(self, change_set_id: str | None, node_identity: str | None = None) -> None:
        super().__init__(
            f"Change-set '{change_set_id}' has a missing or invalid proof",
            code="SIGNATURE_INVALID",
            details={"changeSetId": change_set_id, "nodeIdentity": node_identity},
        )


class NotFoundError(EntityStorageError):
    """The requested entity or record does not exist."""

    def __init__(self, source: str, id: str) -> None:
        super().__init__(
            f"{source}: '{id}' was not found",
            code="NOT_FOUND",
            details={"source": source, "id": id},
        )
        self.id = id
