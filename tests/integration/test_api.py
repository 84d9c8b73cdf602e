"""
Integration tests for the REST API.

Tests cover:
- Entity routes (store, get, query, remove) with identity headers
- Error envelopes and their HTTP status codes
- The trusted change-set push endpoint
- Health check and route prefix settings
"""

import json
import os

import pytest
from fastapi.testclient import TestClient

from estore.entity_storage.api import ApiSettings, create_app
from estore.entity_storage.config import SqliteConnectorConfig
from estore.entity_storage.connectors import MemoryEntityStorageConnector
from estore.entity_storage.connectors.sqlite import SqliteEntityStorageConnector
from estore.entity_storage.errors import SignatureInvalidError
from estore.entity_storage.schema import EntitySchema, prop
from estore.entity_storage.service import EntityStorageService

SCHEMA = EntitySchema(
    name="Profile",
    properties=(
        prop("id", "string", is_primary=True),
        prop("value1", "string", is_secondary=True),
        prop("value2", "integer", optional=True, sort_direction="desc"),
    ),
)

HEADERS = {"X-User-Identity": "did:user:alice", "X-Node-Identity": "did:entity-storage:node-a"}


class RecordingTrustedSync:
    """Stands in for the trusted sync component and records pushes."""

    def __init__(self, error=None):
        self.pushed = []
        self.error = error

    async def sync_change_set(self, change_set_storage_id):
        if self.error is not None:
            raise self.error
        self.pushed.append(change_set_storage_id)


@pytest.fixture
def connector():
    return MemoryEntityStorageConnector(SCHEMA)


@pytest.fixture
def client(connector):
    app = create_app(EntityStorageService(connector), settings=ApiSettings())
    return TestClient(app)


def store(client, entity, headers=HEADERS):
    return client.post("/entity-storage", json=entity, headers=headers)


class TestEntityRoutes:
    """Tests for the entity routes."""

    def test_store_and_get(self, client):
        response = store(client, {"id": "1", "value1": "aaa", "value2": 35})
        assert response.status_code == 204

        response = client.get("/entity-storage/1", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"id": "1", "value1": "aaa", "value2": 35}

    def test_identities_stored_with_entity(self, client, connector):
        store(client, {"id": "1", "value1": "aaa"})

        stored = connector.get_store()[0]

        assert stored["userIdentity"] == "did:user:alice"
        assert stored["nodeIdentity"] == "did:entity-storage:node-a"

    def test_get_by_secondary_index(self, client):
        store(client, {"id": "1", "value1": "aaa"})

        response = client.get(
            "/entity-storage/aaa", params={"secondaryIndex": "value1"}, headers=HEADERS
        )

        assert response.status_code == 200
        assert response.json()["id"] == "1"

    def test_other_user_cannot_read(self, client):
        store(client, {"id": "1", "value1": "aaa"})

        response = client.get(
            "/entity-storage/1", headers={**HEADERS, "X-User-Identity": "did:user:bob"}
        )

        assert response.status_code == 404
        assert response.json()["name"] == "NotFoundError"

    def test_remove(self, client):
        store(client, {"id": "1", "value1": "aaa"})

        assert client.delete("/entity-storage/1", headers=HEADERS).status_code == 204
        assert client.delete("/entity-storage/1", headers=HEADERS).status_code == 404
        assert client.get("/entity-storage/1", headers=HEADERS).status_code == 404


class TestQueryRoute:
    """Tests for GET /entity-storage."""

    @pytest.fixture
    def loaded(self, client):
        for i in range(1, 6):
            store(client, {"id": str(i), "value1": "odd" if i % 2 else "even", "value2": i})
        return client

    def test_query_with_conditions_and_order(self, loaded):
        conditions = {"property": "value1", "comparison": "equals", "value": "odd"}

        response = loaded.get(
            "/entity-storage",
            params={"conditions": json.dumps(conditions), "orderBy": "value2", "orderByDirection": "desc"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert [e["id"] for e in response.json()["entities"]] == ["5", "3", "1"]
        assert response.json().get("cursor") is None

    def test_paging(self, loaded):
        params = {"orderBy": "value2", "pageSize": 2}

        first = loaded.get("/entity-storage", params=params, headers=HEADERS).json()
        second = loaded.get(
            "/entity-storage", params={**params, "cursor": first["cursor"]}, headers=HEADERS
        ).json()

        assert [e["id"] for e in first["entities"]] == ["1", "2"]
        assert [e["id"] for e in second["entities"]] == ["3", "4"]

    def test_projection(self, loaded):
        response = loaded.get(
            "/entity-storage", params={"properties": "id,value2", "orderBy": "id"}, headers=HEADERS
        )

        assert response.json()["entities"][0] == {"id": "1", "value2": 1}

    def test_projection_as_json_list(self, loaded):
        response = loaded.get(
            "/entity-storage",
            params={"properties": '["id"]', "orderBy": "id", "pageSize": 1},
            headers=HEADERS,
        )

        assert response.json()["entities"] == [{"id": "1"}]

    def test_invalid_conditions_json(self, client):
        response = client.get("/entity-storage", params={"conditions": "{nope"}, headers=HEADERS)

        assert response.status_code == 400
        assert response.json()["name"] == "GuardError"

    def test_invalid_sort_direction(self, client):
        response = client.get(
            "/entity-storage",
            params={"orderBy": "value2", "orderByDirection": "sideways"},
            headers=HEADERS,
        )

        assert response.status_code == 400


class TestErrorEnvelopes:
    """Tests for error mapping on the entity routes."""

    def test_missing_identity(self, client):
        response = store(client, {"id": "1", "value1": "aaa"}, headers={})

        assert response.status_code == 400
        body = response.json()
        assert body["name"] == "GuardError"
        assert body["properties"]["argument"] == "userIdentity"

    def test_invalid_entity(self, client):
        response = store(client, {"id": "1", "value2": "x"})

        assert response.status_code == 400
        assert response.json()["name"] == "EntityValidationError"

    def test_stack_included_when_enabled(self, connector):
        app = create_app(
            EntityStorageService(connector), settings=ApiSettings(include_error_stack=True)
        )
        response = TestClient(app).get("/entity-storage/missing", headers=HEADERS)

        assert response.status_code == 404
        assert "stack" in response.json()

    def test_backend_unavailable(self, tmp_path):
        connector = SqliteEntityStorageConnector(
            SCHEMA, SqliteConnectorConfig(database_path=os.path.join(tmp_path, "missing.db"))
        )
        app = create_app(EntityStorageService(connector), settings=ApiSettings())

        response = TestClient(app).get("/entity-storage", headers=HEADERS)

        assert response.status_code == 503
        assert response.json()["name"] == "BackendUnavailableError"


class TestTrustedSyncRoute:
    """Tests for POST /entity-storage/sync/change-set."""

    def test_not_found_without_trusted_component(self, client):
        response = client.post(
            "/entity-storage/sync/change-set", json={"changeSetStorageId": "blob:memory:x"}
        )

        assert response.status_code == 404

    def test_push_forwarded(self, connector):
        trusted = RecordingTrustedSync()
        app = create_app(EntityStorageService(connector), trusted_sync=trusted, settings=ApiSettings())

        response = TestClient(app).post(
            "/entity-storage/sync/change-set", json={"changeSetStorageId": "blob:memory:x"}
        )

        assert response.status_code == 204
        assert trusted.pushed == ["blob:memory:x"]

    def test_disabled_by_settings(self, connector):
        trusted = RecordingTrustedSync()
        app = create_app(
            EntityStorageService(connector),
            trusted_sync=trusted,
            settings=ApiSettings(trusted_sync_enabled=False),
        )

        response = TestClient(app).post(
            "/entity-storage/sync/change-set", json={"changeSetStorageId": "blob:memory:x"}
        )

        assert response.status_code == 404
        assert trusted.pushed == []

    def test_invalid_signature(self, connector):
        trusted = RecordingTrustedSync(SignatureInvalidError("cs-1", "did:node:evil"))
        app = create_app(EntityStorageService(connector), trusted_sync=trusted, settings=ApiSettings())

        response = TestClient(app).post(
            "/entity-storage/sync/change-set", json={"changeSetStorageId": "blob:memory:x"}
        )

        assert response.status_code == 401
        assert response.json()["name"] == "SignatureInvalidError"

    def test_missing_storage_id(self, connector):
        app = create_app(
            EntityStorageService(connector), trusted_sync=RecordingTrustedSync(), settings=ApiSettings()
        )

        response = TestClient(app).post("/entity-storage/sync/change-set", json={})

        assert response.status_code == 422


class TestAppSettings:
    """Tests for health and route settings."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "service": "entity-storage",
            "schema": "Profile",
        }

    def test_custom_base_route(self, connector):
        app = create_app(
            EntityStorageService(connector), settings=ApiSettings(base_route="/api/profiles/")
        )
        client = TestClient(app)

        assert store_at(client, "/api/profiles").status_code == 204
        assert client.get("/api/profiles/1", headers=HEADERS).status_code == 200

    def test_identity_headers_configurable(self, connector):
        settings = ApiSettings(user_identity_header="X-Caller", node_identity_header="X-Node")
        client = TestClient(create_app(EntityStorageService(connector), settings=settings))
        headers = {"X-Caller": "did:user:alice", "X-Node": "did:entity-storage:node-a"}

        assert client.post(
            "/entity-storage", json={"id": "1", "value1": "a"}, headers=headers
        ).status_code == 204
        assert client.get("/entity-storage/1", headers=headers).json()["value1"] == "a"


def store_at(client, route):
    return client.post(route, json={"id": "1", "value1": "aaa"}, headers=HEADERS)
