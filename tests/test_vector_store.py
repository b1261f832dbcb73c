"""
Vector store client - initialization, collection isolation, batch CRUD,
ranked and filtered queries, metadata schemas and query deadlines.
"""

import time
from datetime import datetime

import pytest
from unittest.mock import MagicMock, patch

from memory_vault.vector import (
    CollectionType,
    InMemoryBackend,
    VectorStoreClient,
    VectorStoreConfig,
    VectorStoreError,
    deserialize_metadata,
    matches_where,
    sanitize_user_id,
    serialize_metadata,
)
from memory_vault.vector.types import SEMANTIC_METADATA_SCHEMA


@pytest.fixture
def client():
    """Initialized client over a fresh in-memory backend, no query deadline."""
    c = VectorStoreClient(backend=InMemoryBackend(),
                          config=VectorStoreConfig(embedding_dimensions=4, query_timeout_sec=None))
    c.initialize()
    yield c
    c.reset()


class TestInitialization:
    """Connection lifecycle and error codes."""

    def test_use_before_initialize_fails(self):
        client = VectorStoreClient(backend=InMemoryBackend())

        with pytest.raises(VectorStoreError) as exc_info:
            client.get_or_create_collection(CollectionType.SEMANTIC, "alice")

        assert exc_info.value.code == "NOT_INITIALIZED"

    def test_unreachable_backend_fails_with_init_failed(self):
        backend = MagicMock()
        backend.heartbeat.side_effect = ConnectionError("connection refused")
        client = VectorStoreClient(backend=backend)

        with pytest.raises(VectorStoreError) as exc_info:
            client.initialize()

        assert exc_info.value.code == "INIT_FAILED"
        assert isinstance(exc_info.value.cause, ConnectionError)
        assert not client.is_initialized

    def test_initialize_is_idempotent(self):
        backend = MagicMock()
        backend.heartbeat.return_value = 0
        client = VectorStoreClient(backend=backend)

        client.initialize()
        client.initialize()

        backend.heartbeat.assert_called_once()
        client.disconnect()

    def test_unknown_error_code_rejected(self):
        with pytest.raises(ValueError):
            VectorStoreError("boom", "NOT_A_CODE")

    def test_check_health(self, client):
        assert client.check_health() is True

        with patch.object(client.backend, "heartbeat", side_effect=RuntimeError("down")):
            assert client.check_health() is False

    def test_backend_from_config(self):
        client = VectorStoreClient(config=VectorStoreConfig(backend="memory", query_timeout_sec=None))
        client.initialize()

        assert isinstance(client.backend, InMemoryBackend)
        client.reset()
        assert not client.is_initialized


class TestCollections:
    """Deterministic naming, caching and per-user isolation."""

    def test_collection_name_is_deterministic(self, client):
        first = client.build_collection_name(CollectionType.SEMANTIC, "alice@example.com")
        second = client.build_collection_name(CollectionType.SEMANTIC, "alice@example.com")

        assert first == second
        assert first.startswith("vault_semantic_")

    def test_sanitized_ids_do_not_collide(self):
        assert sanitize_user_id("alice@example.com") != sanitize_user_id("alice_example_com")

    def test_handle_is_cached(self, client):
        first = client.get_or_create_collection(CollectionType.EPISODIC, "alice")
        second = client.get_or_create_collection(CollectionType.EPISODIC, "alice")

        assert first is second
        assert first.metadata["type"] == "episodic"
        assert first.metadata["user_id"] == "alice"
        assert "version" in first.metadata
        assert "created_at" in first.metadata

    def test_get_missing_collection(self, client):
        with pytest.raises(VectorStoreError) as exc_info:
            client.get_collection(CollectionType.PROCEDURAL, "nobody")

        assert exc_info.value.code == "COLLECTION_NOT_FOUND"

    def test_list_and_delete_user_collections(self, client):
        client.get_or_create_collection(CollectionType.SEMANTIC, "alice")
        client.get_or_create_collection(CollectionType.EPISODIC, "alice")
        client.get_or_create_collection(CollectionType.SEMANTIC, "bob")

        assert len(client.list_user_collections("alice")) == 2

        client.delete_collection(CollectionType.EPISODIC, "alice")

        names = client.list_user_collections("alice")
        assert names == [client.build_collection_name(CollectionType.SEMANTIC, "alice")]

    def test_users_never_see_each_other(self, client):
        alice = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")
        bob = client.get_or_create_collection(CollectionType.SEMANTIC, "bob")

        client.add(alice, ["a1"], ["same content"], [{}], [[1.0, 0.0, 0.0, 0.0]])
        client.add(bob, ["b1"], ["same content"], [{}], [[1.0, 0.0, 0.0, 0.0]])

        assert [r.id for r in client.query_all(alice)] == ["a1"]
        assert [r.id for r in client.query_by_embedding(bob, [1.0, 0.0, 0.0, 0.0])] == ["b1"]


class TestDocuments:
    """Batch writes and reads."""

    def test_batch_length_mismatch_is_caller_error(self, client):
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")

        with pytest.raises(ValueError, match="Batch length mismatch"):
            client.add(handle, ["a", "b"], ["only one"], [{}, {}])

        with pytest.raises(ValueError, match="Batch length mismatch"):
            client.add(handle, ["a"], ["one"], [{}], [[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0]])

    def test_batch_is_one_backend_call(self, client):
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")

        with patch.object(client.backend, "add", wraps=client.backend.add) as add:
            client.add(handle, ["a", "b", "c"], ["1", "2", "3"], [{}, {}, {}])

        add.assert_called_once()

    def test_duplicate_add_fails(self, client):
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")
        client.add(handle, ["a"], ["one"], [{}])

        with pytest.raises(VectorStoreError) as exc_info:
            client.add(handle, ["a"], ["again"], [{}])

        assert exc_info.value.code == "INSERT_FAILED"

    def test_update_merges_metadata(self, client):
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")
        client.add(handle, ["a"], ["one"], [{"project": "x", "priority": 1}], [[1.0, 0.0, 0.0, 0.0]])

        client.update(handle, ["a"], ["one, revised"], [{"priority": 2}])

        record = client.get_documents(handle, ["a"])[0]
        assert record.content == "one, revised"
        assert record.metadata == {"project": "x", "priority": 2}
        assert record.embedding == [1.0, 0.0, 0.0, 0.0]

    def test_update_unknown_id_fails(self, client):
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")

        with pytest.raises(VectorStoreError) as exc_info:
            client.update(handle, ["missing"], ["x"], [{}])

        assert exc_info.value.code == "UPDATE_FAILED"

    def test_upsert_and_delete(self, client):
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")
        client.upsert(handle, ["a", "b"], ["1", "2"], [{}, {}])
        client.upsert(handle, ["b", "c"], ["2b", "3"], [{}, {}])

        assert client.count(handle) == 3

        client.delete(handle, ["a", "c"])

        remaining = client.query_all(handle)
        assert [(r.id, r.content) for r in remaining] == [("b", "2b")]

    def test_upsert_replaces_metadata(self, client):
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")
        client.add(handle, ["a"], ["1"], [{"project": "x", "priority": 3}], [[1.0, 0.0, 0.0, 0.0]])

        client.upsert(handle, ["a"], ["1c"], [{"project": "y"}])
        record = client.get_documents(handle, ["a"])[0]
        assert record.metadata == {"project": "y"}
        assert record.embedding == pytest.approx([1.0, 0.0, 0.0, 0.0])


class TestQueries:
    """Ranked and filtered reads."""

    @pytest.fixture
    def populated(self, client):
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")
        client.add(
            handle,
            ["near", "mid", "far"],
            ["near", "mid", "far"],
            [{"project": "x", "priority": 3}, {"project": "y", "priority": 2}, {"project": "x", "priority": 1}],
            [[1.0, 0.0, 0.0, 0.0], [0.7, 0.7, 0.0, 0.0], [0.0, 0.0, 1.0, 0.0]],
        )
        return handle

    def test_query_orders_by_ascending_distance(self, client, populated):
        results = client.query_by_embedding(populated, [1.0, 0.0, 0.0, 0.0], limit=3)

        assert [r.id for r in results] == ["near", "mid", "far"]
        assert results[0].distance == pytest.approx(0.0)
        assert results[0].distance <= results[1].distance <= results[2].distance
        assert results[0].embedding is None

    def test_query_limit_and_embeddings(self, client, populated):
        results = client.query_by_embedding(populated, [1.0, 0.0, 0.0, 0.0], limit=1, include_embeddings=True)

        assert len(results) == 1
        assert results[0].embedding == [1.0, 0.0, 0.0, 0.0]

    def test_query_with_where(self, client, populated):
        results = client.query_by_embedding(populated, [1.0, 0.0, 0.0, 0.0], where={"project": "y"})

        assert [r.id for r in results] == ["mid"]

    def test_query_all_filters_and_paginates(self, client, populated):
        high = client.query_all(populated, where={"priority": {"$gte": 2}})
        assert [r.id for r in high] == ["near", "mid"]

        page = client.query_all(populated, limit=1, offset=1)
        assert [r.id for r in page] == ["mid"]

    def test_query_deadline(self):
        class SlowBackend(InMemoryBackend):
            def query(self, *args, **kwargs):
                time.sleep(0.5)
                return super().query(*args, **kwargs)

        client = VectorStoreClient(backend=SlowBackend(),
                                   config=VectorStoreConfig(query_timeout_sec=0.05))
        client.initialize()
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")

        with pytest.raises(VectorStoreError) as exc_info:
            client.query_by_embedding(handle, [1.0, 0.0, 0.0, 0.0])

        assert exc_info.value.code == "QUERY_FAILED"
        assert "timed out" in str(exc_info.value)
        client.disconnect()

    def test_backend_failure_surfaces_query_failed(self, client, populated):
        with patch.object(client.backend, "query", side_effect=RuntimeError("stalled")):
            with pytest.raises(VectorStoreError) as exc_info:
                client.query_by_embedding(populated, [1.0, 0.0, 0.0, 0.0])

        assert exc_info.value.code == "QUERY_FAILED"
        assert isinstance(exc_info.value.cause, RuntimeError)


class TestWhereFilters:

    def test_operators(self):
        metadata = {"project": "x", "priority": 3, "done": False}

        assert matches_where(metadata, {"priority": {"$gt": 2, "$lte": 3}})
        assert not matches_where(metadata, {"priority": {"$lt": 3}})
        assert matches_where(metadata, {"project": {"$in": ["x", "y"]}})
        assert matches_where(metadata, {"project": {"$nin": ["z"]}})
        assert matches_where(metadata, {"project": {"$ne": "y"}})
        assert matches_where(metadata, {"$or": [{"project": "z"}, {"done": False}]})
        assert not matches_where(metadata, {"$and": [{"project": "x"}, {"done": True}]})

    def test_range_on_non_numeric_does_not_match(self):
        assert not matches_where({"project": "x"}, {"project": {"$gt": 1}})


class TestMetadata:
    """Schema-driven (de)serialization."""

    def test_round_trip_restores_types(self):
        created = datetime(2024, 3, 1, 12, 30, 15, 123456)
        original = {
            "created_at": created,
            "topics": ["pricing", "q1"],
            "contradicts": [],
            "source": {"type": "conversation", "source_id": "c-1"},
            "confidence": 0.8,
            "category": "decisions",
            "pinned": True,
        }

        stored = serialize_metadata(original, SEMANTIC_METADATA_SCHEMA)

        assert all(isinstance(v, (str, int, float, bool)) for v in stored.values())
        assert deserialize_metadata(stored, SEMANTIC_METADATA_SCHEMA) == original

    def test_none_values_dropped(self):
        assert serialize_metadata({"a": None, "b": 1}) == {"b": 1}

    def test_unsupported_value_rejected(self):
        with pytest.raises(TypeError):
            serialize_metadata({"blob": object()})

    def test_restoration_only_uses_schema(self):
        stored = {"topics": '["a"]', "note": '["not", "restored"]'}

        restored = deserialize_metadata(stored, SEMANTIC_METADATA_SCHEMA)

        assert restored["topics"] == ["a"]
        assert restored["note"] == '["not", "restored"]'

    def test_round_trip_through_client(self, client):
        handle = client.get_or_create_collection(CollectionType.SEMANTIC, "alice")
        created = datetime(2024, 1, 2, 3, 4, 5)
        client.add(handle, ["a"], ["fact"], [{"created_at": created, "topics": ["x", "y"]}])

        record = client.get_documents(handle, ["a"])[0]

        assert record.metadata["created_at"] == created
        assert record.metadata["topics"] == ["x", "y"]
