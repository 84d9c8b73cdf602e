"""
Unit tests for verifiable storage.

Tests cover:
- Hash chain construction and verification
- Memory and file backends: create, get, verify
- Tamper detection
"""

import os
import tempfile

import pytest

from estore.entity_storage.errors import GuardError, NotFoundError
from estore.entity_storage.verifiable import (
    FileVerifiableStorage,
    MemoryVerifiableStorage,
    VerifiableItem,
    next_revision,
    verify_chain,
)


class TestHashChain:
    """Tests for next_revision and verify_chain."""

    def test_chain_of_revisions(self):
        first = next_revision("k", {"a": 1}, None)
        second = next_revision("k", {"a": 2}, first)

        assert first.revision == 0
        assert first.previous_hash == "0" * 64
        assert second.revision == 1
        assert second.previous_hash == first.hash
        assert verify_chain([first, second]) is True

    def test_hash_ignores_key_order(self):
        assert next_revision("k", {"a": 1, "b": 2}, None).hash == (
            next_revision("k", {"b": 2, "a": 1}, None).hash
        )

    def test_edited_revision_breaks_chain(self):
        first = next_revision("k", {"a": 1}, None)
        second = next_revision("k", {"a": 2}, first)
        edited = VerifiableItem.from_dict({**first.to_dict(), "data": {"a": 9}})
        assert verify_chain([edited, second]) is False

    def test_missing_revision_breaks_chain(self):
        first = next_revision("k", {"a": 1}, None)
        second = next_revision("k", {"a": 2}, first)
        assert verify_chain([second]) is False

    def test_empty_chain_is_not_verified(self):
        assert verify_chain([]) is False

    def test_dict_round_trip(self):
        item = next_revision("k", {"a": 1}, None)
        assert VerifiableItem.from_dict(item.to_dict()) == item


class TestMemoryVerifiableStorage:
    """Tests for MemoryVerifiableStorage."""

    @pytest.mark.asyncio
    async def test_create_and_get_latest(self):
        storage = MemoryVerifiableStorage()

        await storage.create("pointer", {"syncPointerId": "a"})
        await storage.create("pointer", {"syncPointerId": "b"})

        latest = await storage.get("pointer")
        assert latest.revision == 1
        assert latest.data == {"syncPointerId": "b"}
        assert await storage.verify("pointer") is True

    @pytest.mark.asyncio
    async def test_unknown_key(self):
        storage = MemoryVerifiableStorage()
        with pytest.raises(NotFoundError):
            await storage.get("missing")
        assert await storage.verify("missing") is False

    @pytest.mark.asyncio
    async def test_empty_key_rejected(self):
        with pytest.raises(GuardError):
            await MemoryVerifiableStorage().create("", {})

    @pytest.mark.asyncio
    async def test_tamper_detected(self):
        storage = MemoryVerifiableStorage()
        await storage.create("pointer", {"syncPointerId": "a"})
        await storage.create("pointer", {"syncPointerId": "b"})

        storage.tamper("pointer", 0, {"syncPointerId": "evil"})

        assert await storage.verify("pointer") is False


class TestFileVerifiableStorage:
    """Tests for FileVerifiableStorage."""

    @pytest.fixture
    def data_path(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield os.path.join(tmpdir, "state", "verifiable.json")

    @pytest.mark.asyncio
    async def test_create_get_verify(self, data_path):
        storage = FileVerifiableStorage(data_path)

        await storage.create("pointer", {"syncPointerId": "a"})
        await storage.create("pointer", {"syncPointerId": "b"})

        latest = await storage.get("pointer")
        assert latest.data == {"syncPointerId": "b"}
        assert await storage.verify("pointer") is True

    @pytest.mark.asyncio
    async def test_revisions_survive_reopen(self, data_path):
        await FileVerifiableStorage(data_path).create("pointer", {"syncPointerId": "a"})
        reopened = FileVerifiableStorage(data_path)
        assert (await reopened.get("pointer")).data == {"syncPointerId": "a"}
        assert await reopened.verify("pointer") is True

    @pytest.mark.asyncio
    async def test_edited_file_fails_verification(self, data_path):
        import json

        storage = FileVerifiableStorage(data_path)
        await storage.create("pointer", {"syncPointerId": "a"})
        await storage.create("pointer", {"syncPointerId": "b"})

        with open(data_path, encoding="utf-8") as handle:
            document = json.load(handle)
        document["pointer"][0]["data"] = {"syncPointerId": "evil"}
        with open(data_path, "w", encoding="utf-8") as handle:
            json.dump(document, handle)

        assert await storage.verify("pointer") is False

    @pytest.mark.asyncio
    async def test_unknown_key(self, data_path):
        with pytest.raises(NotFoundError):
            await FileVerifiableStorage(data_path).get("missing")
