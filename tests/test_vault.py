"""
Vault wiring - store and search through every layer, offline passes via the
task queue, rotation with re-encryption, export and erasure.
"""

import pytest

from memory_vault import build_vault
from memory_vault.core.schemas import CrossProjectQueryOptions
from memory_vault.encryption import EncryptionError, VaultDocument, is_encrypted_string
from memory_vault.vector import (
    CallableEmbeddingProvider,
    CollectionType,
    DeterministicHashEmbedding,
    InMemoryBackend,
    VectorStoreConfig,
)


@pytest.fixture
def vault():
    v = build_vault(
        DeterministicHashEmbedding(8),
        vector_config=VectorStoreConfig(embedding_dimensions=8, query_timeout_sec=None),
        backend=InMemoryBackend(),
        encryption_enabled=True,
    )
    yield v
    v.close()


def _raw_records(vault, user_id):
    handle = vault.client.get_collection(CollectionType.SEMANTIC, user_id)
    return vault.client.query_all(handle)


class TestStoreAndSearch:

    def test_memory_round_trip(self, vault):
        memory = vault.store_memory("alice", "We decided to increase pricing in Q1",
                                    topics=["pricing"], project_id="X")

        loaded = vault.get_memory("alice", memory.id)

        assert loaded.content == "We decided to increase pricing in Q1"
        assert vault.cross_project.get_source_context("alice", memory.id).project_id == "X"
        assert is_encrypted_string(_raw_records(vault, "alice")[0].content)

    def test_search_finds_exact_text_first(self, vault):
        target = vault.store_memory("alice", "Quarterly planning happens in March", discover=False)
        vault.store_memory("alice", "The office plant needs water", discover=False)

        hits = vault.search("alice", "Quarterly planning happens in March", limit=2)

        assert hits[0][0].id == target.id
        assert hits[0][1] == pytest.approx(0.0, abs=1e-5)

    def test_discovery_is_queued_not_inline(self, vault):
        first = vault.store_memory("alice", "Launch plan", embedding=[1.0] + [0.0] * 7)
        vault.store_memory("alice", "Launch plan, confirmed", embedding=[0.95, 0.31] + [0.0] * 6)

        assert vault.cross_project.get_cross_references("alice", first.id) == []
        assert len(vault.task_queue) == 2

        results = vault.run_pending_tasks()

        assert [r.status for r in results] == ["success", "success"]
        assert len(vault.cross_project.get_cross_references("alice", first.id)) == 1

    def test_cross_project_query(self):
        vectors = {
            "We decided to increase pricing in Q1": [1.0, 0.0, 0.0, 0.0],
            "We will not increase pricing this year": [0.9, 0.3, 0.0, 0.0],
            "pricing": [1.0, 0.0, 0.0, 0.0],
        }
        vault = build_vault(CallableEmbeddingProvider(vectors.__getitem__, dimension=4),
                            vector_config=VectorStoreConfig(embedding_dimensions=4, query_timeout_sec=None),
                            backend=InMemoryBackend(), encryption_enabled=True)
        vault.store_memory("alice", "We decided to increase pricing in Q1", topics=["pricing"],
                           project_id="X", discover=False)
        vault.store_memory("alice", "We will not increase pricing this year", topics=["pricing"],
                           project_id="Y", discover=False)

        result = vault.query_cross_project(CrossProjectQueryOptions(user_id="alice", query="pricing"))

        assert len(result.memories) == 2
        assert len(result.contradictions) == 1
        assert result.common_themes == ["pricing"]
        assert set(result.project_summaries) == {"X", "Y"}
        vault.close()

    def test_records_in_other_collections(self, vault):
        vault.store_records("alice", CollectionType.EPISODIC, [
            VaultDocument(id="ep1", content="Discussed the launch", metadata={"topics": ["launch"]},
                          embedding=[0.1] * 8),
        ])

        records = vault.load_records("alice", CollectionType.EPISODIC)

        assert records[0].content == "Discussed the launch"
        assert records[0].metadata["topics"] == ["launch"]


class TestRotation:

    def test_rotation_schedules_reencryption(self, vault):
        memory = vault.store_memory("alice", "rotate me", discover=False)
        old_key_id = _raw_records(vault, "alice")[0].metadata["_keyId"]

        result = vault.rotate_user_key("alice")
        vault.run_pending_tasks()

        assert result.old_key.key_id == old_key_id
        assert _raw_records(vault, "alice")[0].metadata["_keyId"] == result.new_key.key_id
        assert vault.get_memory("alice", memory.id).content == "rotate me"

    def test_rotation_without_migration(self, vault):
        vault.store_memory("alice", "rotate me", discover=False)

        vault.rotate_user_key("alice", migrate=False)

        assert len(vault.task_queue) == 0


class TestExportAndErasure:

    def test_export_has_plaintext_and_no_key_bytes(self, vault):
        memory = vault.store_memory("alice", "Prefers email over calls", project_id="X", discover=False)
        key = vault.key_manager.get_active_key("alice")

        export = vault.export_user_data("alice")

        records = export["collections"]["semantic"]
        assert records[0]["content"] == "Prefers email over calls"
        assert "_keyId" not in records[0]["metadata"]
        assert export["keys"][0]["key_id"] == key.key_id
        assert all("key" not in k for k in export["keys"])
        assert key.key.hex() not in repr(export)
        assert export["source_contexts"][memory.id]["project_id"] == "X"

    def test_delete_user_data(self, vault):
        memory = vault.store_memory("alice", "alice fact", project_id="X", discover=False)
        vault.store_memory("bob", "bob fact", discover=False)

        assert vault.delete_user_data("alice") == 1

        assert vault.cross_project.get_source_context("alice", memory.id) is None
        assert vault.export_user_data("alice")["collections"] == {}
        assert len(vault.export_user_data("bob")["collections"]["semantic"]) == 1

    def test_deleted_keys_make_records_unreadable(self, vault):
        memory = vault.store_memory("alice", "secret plan", discover=False)

        vault.delete_user_keys("alice")

        with pytest.raises(EncryptionError):
            vault.get_memory("alice", memory.id)

    def test_erase_user(self, vault):
        vault.store_memory("alice", "alice fact", discover=False)

        assert vault.erase_user("alice") == 1
        assert not vault.key_manager.has_user_key("alice")


def test_close_zeroes_keys():
    vault = build_vault(DeterministicHashEmbedding(8), backend=InMemoryBackend(), encryption_enabled=True,
                        vector_config=VectorStoreConfig(embedding_dimensions=8, query_timeout_sec=None))
    vault.store_memory("alice", "fact", discover=False)
    key = vault.key_manager.store.get_active_key("alice")

    vault.close()

    assert key.key == bytearray(32)
