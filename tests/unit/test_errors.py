"""
Unit tests for the error hierarchy and its REST mapping.

Tests cover:
- Error envelopes with properties, inner errors and stacks
- Error codes and retryable flags
- HTTP status mapping
"""

import pytest

from estore.entity_storage.api import status_for
from estore.entity_storage.errors import (
    BackendUnavailableError,
    ConfigurationError,
    EntityStorageError,
    EntityValidationError,
    GuardError,
    NotFoundError,
    QueryFailedError,
    SignatureInvalidError,
    SortNotIndexedError,
    UndefinedPropertyError,
    UnsupportedComparisonError,
    WriteFailedError,
)


class TestEnvelope:
    """Tests for EntityStorageError.to_envelope."""

    def test_minimal_envelope(self):
        assert EntityStorageError("boom").to_envelope() == {
            "name": "EntityStorageError",
            "message": "boom",
        }

    def test_properties_and_inner(self):
        inner = GuardError("Service", "id")
        error = WriteFailedError(id="1", container="items", inner=inner)

        envelope = error.to_envelope()

        assert envelope["name"] == "WriteFailedError"
        assert envelope["message"] == "set failed for '1'"
        assert envelope["properties"] == {"operation": "set", "id": "1", "container": "items"}
        assert envelope["inner"]["name"] == "GuardError"
        assert envelope["inner"]["properties"] == {"source": "Service", "argument": "id"}

    def test_foreign_inner(self):
        error = BackendUnavailableError("down", operation="get", inner=OSError("refused"))
        assert error.to_envelope()["inner"] == {"name": "OSError", "message": "refused"}

    def test_stack_only_on_request(self):
        try:
            raise NotFoundError("EntityStorageService", "1")
        except NotFoundError as err:
            error = err
        assert "stack" not in error.to_envelope()
        assert "test_stack_only_on_request" in error.to_envelope(include_stack=True)["stack"]


class TestErrorTypes:
    """Tests for individual error types."""

    def test_guard_error_is_value_error(self):
        error = GuardError("Connector", "entity")
        assert isinstance(error, ValueError)
        assert error.code == "GUARD_FAILURE"
        assert error.message == "Connector: 'entity' is required"

    def test_validation_error(self):
        error = EntityValidationError("Item", ["Property 'value1' is required"])
        assert isinstance(error, GuardError)
        assert error.code == "ENTITY_INVALID"
        assert error.details == {"schema": "Item", "errors": ["Property 'value1' is required"]}

    def test_retryable_flags(self):
        assert BackendUnavailableError("down").retryable is True
        assert QueryFailedError().retryable is True
        assert GuardError("x", "y").retryable is False

    def test_default_operation_message(self):
        assert QueryFailedError().message == "query failed"


class TestStatusFor:
    """Tests for status_for."""

    @pytest.mark.parametrize(
        "error,status",
        [
            (NotFoundError("EntityStorageService", "1"), 404),
            (GuardError("EntityStorageService", "id"), 400),
            (EntityValidationError("Item", []), 400),
            (UndefinedPropertyError("Item", "value2"), 400),
            (SignatureInvalidError("cs-1", "did:node:a"), 401),
            (UnsupportedComparisonError("dynamodb", "includes"), 422),
            (SortNotIndexedError("dynamodb", "value3"), 422),
            (BackendUnavailableError("down"), 503),
            (WriteFailedError(id="1"), 500),
            (ConfigurationError("bad"), 500),
        ],
    )
    def test_mapping(self, error, status):
        assert status_for(error) == status
