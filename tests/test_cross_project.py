"""
Cross-project reasoning - ranked queries, themes and summaries, contradiction
detection across projects, cross-reference classification and resolution.
"""

import math
from datetime import datetime, timedelta

import pytest

from memory_vault.core.cross_project import CrossProjectConfig, CrossProjectEngine
from memory_vault.core.schemas import CrossProjectQueryOptions, CrossReference, SourceContext, TimeRange
from memory_vault.encryption import EncryptedStore, KeyManager, KeyManagerConfig, KeyStore
from memory_vault.vector import CallableEmbeddingProvider, InMemoryBackend, VectorStoreClient, VectorStoreConfig
from memory_vault.vector.semantic_store import SemanticMemoryStore

USER = "alice"

QUERY_VECTORS = {
    "pricing": [1.0, 0.0, 0.0, 0.0],
}


def _unit(cos):
    """4-d unit vector whose cosine with [1, 0, 0, 0] is ``cos``."""
    return [cos, math.sqrt(1.0 - cos * cos), 0.0, 0.0]


@pytest.fixture
def semantic_store():
    client = VectorStoreClient(backend=InMemoryBackend(), config=VectorStoreConfig(query_timeout_sec=None))
    client.initialize()
    key_manager = KeyManager(KeyManagerConfig(), KeyStore())
    encrypted_store = EncryptedStore(key_manager, client, enabled=True)
    yield SemanticMemoryStore(client, encrypted_store)
    encrypted_store.close()
    key_manager.close()
    client.reset()


@pytest.fixture
def engine(semantic_store):
    provider = CallableEmbeddingProvider(lambda text: QUERY_VECTORS[text], dimension=4)
    return CrossProjectEngine(semantic_store, provider, CrossProjectConfig())


def remember(semantic_store, engine, content, embedding, topics=(), project=None, user_id=USER):
    memory = semantic_store.create_memory(user_id, content, embedding, topics=topics)
    engine.add_source_context(user_id, memory.id, SourceContext(project_id=project))
    return memory


@pytest.fixture
def pricing_memories(semantic_store, engine):
    """The Q1 pricing decision in project X and its reversal in project Y."""
    a = remember(semantic_store, engine, "We decided to increase pricing in Q1", [1.0, 0.0, 0.0, 0.0],
                 topics=["pricing"], project="X")
    b = remember(semantic_store, engine, "We will not increase pricing this year", [0.9, 0.3, 0.0, 0.0],
                 topics=["pricing"], project="Y")
    return a, b


class TestContradictionDetection:

    def test_cross_project_reversal_is_detected(self, semantic_store, engine, pricing_memories):
        a, b = pricing_memories
        enriched = [engine.enrich_with_context(m) for m in semantic_store.get_all_memories(USER)]

        detections = engine.detect_contradictions(enriched)

        assert len(detections) == 1
        detection = detections[0]
        assert {detection.memory_id, detection.contradicting_memory_id} == {a.id, b.id}
        assert detection.topic == "pricing"
        assert detection.confidence >= 0.4
        assert detection.claim_a == "We decided to increase pricing in Q1"
        assert detection.resolution is None

    def test_same_project_is_not_checked(self, semantic_store, engine):
        remember(semantic_store, engine, "We will increase pricing", [1.0, 0.0, 0.0, 0.0], ["pricing"], "X")
        remember(semantic_store, engine, "We will not increase pricing", [1.0, 0.0, 0.0, 0.0], ["pricing"], "X")
        enriched = [engine.enrich_with_context(m) for m in semantic_store.get_all_memories(USER)]

        assert engine.detect_contradictions(enriched) == []

    def test_failing_pair_is_skipped(self, semantic_store, engine, pricing_memories):
        remember(semantic_store, engine, "We will not change pricing", [1.0, 0.0, 0.0], ["pricing"], "Z")
        enriched = [engine.enrich_with_context(m) for m in semantic_store.get_all_memories(USER)]

        detections = engine.detect_contradictions(enriched)

        assert len(detections) == 1

    def test_ledger_deduplicates(self, semantic_store, engine, pricing_memories):
        enriched = [engine.enrich_with_context(m) for m in semantic_store.get_all_memories(USER)]

        first = engine.detect_contradictions(enriched)
        second = engine.detect_contradictions(enriched)

        assert first[0] is second[0]
        assert len(engine.get_contradictions(USER)) == 1


class TestResolution:

    def test_superseded_resolution_marks_memory(self, semantic_store, engine, pricing_memories):
        a, b = pricing_memories
        engine.detect_contradictions([engine.enrich_with_context(m) for m in semantic_store.get_all_memories(USER)])

        assert engine.resolve_contradiction(USER, b.id, a.id, "superseded") is True

        detection = engine.get_contradictions(USER)[0]
        assert detection.resolution == "superseded"
        assert detection.resolved_at is not None
        assert semantic_store.get_memory(USER, b.id).supersedes == [a.id]
        assert semantic_store.get_memory(USER, a.id) is not None
        assert engine.get_contradictions(USER, unresolved_only=True) == []

    def test_resolution_is_terminal(self, semantic_store, engine, pricing_memories):
        a, b = pricing_memories
        engine.detect_contradictions([engine.enrich_with_context(m) for m in semantic_store.get_all_memories(USER)])
        engine.resolve_contradiction(USER, a.id, b.id, "dismissed")

        assert engine.resolve_contradiction(USER, a.id, b.id, "merged") is False
        assert engine.get_contradictions(USER)[0].resolution == "dismissed"

    def test_unknown_resolution(self, engine):
        with pytest.raises(ValueError):
            engine.resolve_contradiction(USER, "a", "b", "context_dependent")


class TestQueries:

    @pytest.fixture
    def memories(self, semantic_store, engine, pricing_memories):
        a, b = pricing_memories
        unrelated = remember(semantic_store, engine, "Team offsite in May", [0.0, 1.0, 0.0, 0.0],
                             topics=["events"], project="X")
        roadmap = remember(semantic_store, engine, "Roadmap mentions pricing tiers", _unit(0.55),
                           topics=["roadmap"], project="Y")
        return a, b, unrelated, roadmap

    def test_ranked_results_above_floor(self, engine, memories):
        a, b, unrelated, roadmap = memories

        result = engine.query_cross_project(CrossProjectQueryOptions(user_id=USER, query="pricing"))

        assert [s.memory.memory.id for s in result.memories] == [a.id, b.id, roadmap.id]
        assert all(s.relevance > 0.5 for s in result.memories)
        assert result.memories[0].project == "X"
        assert result.common_themes == ["pricing"]
        assert len(result.contradictions) == 1
        assert result.project_summaries == {
            "X": "1 relevant memories. Topics: pricing",
            "Y": "2 relevant memories. Topics: pricing, roadmap",
        }

    def test_project_filter_and_limit(self, engine, memories):
        a, b, unrelated, roadmap = memories

        only_x = engine.query_cross_project(CrossProjectQueryOptions(user_id=USER, query="pricing", project_ids=["X"]))
        top_one = engine.query_cross_project(CrossProjectQueryOptions(user_id=USER, query="pricing", limit=1,
                                                                      detect_contradictions=False))

        assert [s.memory.memory.id for s in only_x.memories] == [a.id]
        assert [s.memory.memory.id for s in top_one.memories] == [a.id]
        assert top_one.contradictions == []

    def test_time_range_filter(self, engine, memories):
        past = TimeRange(start=datetime.now() - timedelta(days=30), end=datetime.now() - timedelta(days=10))

        result = engine.query_cross_project(CrossProjectQueryOptions(user_id=USER, query="pricing", time_range=past))

        assert result.memories == []
        assert result.project_summaries == {}

    def test_time_range_accepts_utc_bounds(self, engine, memories):
        window = TimeRange(start="2020-01-01T00:00:00Z", end="2100-01-01T00:00:00Z")

        result = engine.query_cross_project(CrossProjectQueryOptions(user_id=USER, query="pricing", time_range=window))

        assert len(result.memories) == 3

    def test_other_projects_use_stricter_floor(self, engine, memories):
        a, b, unrelated, roadmap = memories

        related = engine.find_related_from_other_projects(USER, "X", "pricing")

        assert [m.memory.id for m in related] == [b.id]

    def test_invalid_options(self):
        with pytest.raises(ValueError):
            CrossProjectQueryOptions(user_id=USER, query="   ")
        with pytest.raises(ValueError):
            CrossProjectQueryOptions(user_id=USER, query="pricing", limit=0)


class TestCrossReferences:

    def test_relationship_precedence(self, semantic_store, engine):
        target = remember(semantic_store, engine, "Launch plan", [1.0, 0.0, 0.0, 0.0], project="X")
        supports = remember(semantic_store, engine, "Launch plan, confirmed", _unit(0.95), project="Y")
        related = remember(semantic_store, engine, "Launch checklist", _unit(0.8), project="Y")
        contradicts = remember(semantic_store, engine, "Launch is cancelled", _unit(0.8), project="Z")
        extends = remember(semantic_store, engine, "Launch plan v2", _unit(0.95), project="Z")
        remember(semantic_store, engine, "Lunch menu", _unit(0.5), project="Y")
        semantic_store.mark_contradiction(USER, target.id, contradicts.id)
        semantic_store.mark_supersession(USER, target.id, extends.id)

        references = engine.discover_cross_references(USER, target.id)

        by_target = {r.target_memory_id: r for r in references}
        assert set(by_target) == {supports.id, related.id, contradicts.id, extends.id}
        assert by_target[supports.id].relationship_type == "supports"
        assert by_target[supports.id].strength == pytest.approx(0.95, abs=1e-4)
        assert by_target[related.id].relationship_type == "related"
        assert by_target[contradicts.id].relationship_type == "contradicts"
        assert by_target[extends.id].relationship_type == "extends"
        assert by_target[supports.id].target_project_id == "Y"
        assert engine.get_cross_references(USER, target.id) == references

    def test_unknown_memory(self, engine):
        assert engine.discover_cross_references(USER, "missing") == []


class TestHousekeeping:

    def test_enrich_defaults_context(self, semantic_store, engine):
        memory = semantic_store.create_memory(USER, "no provenance", [1.0, 0.0, 0.0, 0.0])

        enriched = engine.enrich_with_context(memory)

        assert enriched.project_id is None
        assert enriched.source_context.interface == "web"

    def test_stats_and_clear(self, semantic_store, engine, pricing_memories):
        a, b = pricing_memories
        engine.detect_contradictions([engine.enrich_with_context(m) for m in semantic_store.get_all_memories(USER)])
        engine.add_cross_reference(USER, a.id, CrossReference(target_memory_id=b.id, strength=0.9, discovered_by="user"))

        stats = engine.get_cross_project_stats(USER)
        assert stats.memories_with_context == 2
        assert stats.total_cross_references == 1
        assert stats.unresolved_contradictions == 1

        engine.clear()

        assert engine.get_cross_project_stats(USER).memories_with_context == 0
        assert engine.get_contradictions(USER) == []

    def test_forget_memories(self, semantic_store, engine, pricing_memories):
        a, b = pricing_memories
        engine.detect_contradictions([engine.enrich_with_context(m) for m in semantic_store.get_all_memories(USER)])

        engine.forget_memories(USER, [a.id])

        assert engine.get_source_context(USER, a.id) is None
        assert engine.get_source_context(USER, b.id) is not None
        assert engine.get_contradictions(USER) == []


class TestUserIsolation:

    @pytest.fixture
    def both_users(self, semantic_store, engine, pricing_memories):
        c = remember(semantic_store, engine, "We decided to increase pricing in Q1", [1.0, 0.0, 0.0, 0.0],
                     topics=["pricing"], project="X", user_id="bob")
        d = remember(semantic_store, engine, "We will not increase pricing this year", [0.9, 0.3, 0.0, 0.0],
                     topics=["pricing"], project="Y", user_id="bob")
        for user_id in (USER, "bob"):
            engine.detect_contradictions([engine.enrich_with_context(m)
                                          for m in semantic_store.get_all_memories(user_id)])
        return pricing_memories + (c, d)

    def test_ledgers_are_per_user(self, engine, both_users):
        a, b, c, d = both_users

        assert len(engine.get_contradictions(USER)) == 1
        assert len(engine.get_contradictions("bob")) == 1
        assert engine.get_contradictions(USER)[0].user_id == USER
        assert engine.get_contradictions("nobody") == []

    def test_resolution_stays_with_its_user(self, engine, both_users):
        a, b, c, d = both_users

        assert engine.resolve_contradiction("bob", a.id, b.id, "dismissed") is False
        assert engine.resolve_contradiction("bob", c.id, d.id, "dismissed") is True

        assert engine.get_contradictions(USER, unresolved_only=True) != []
        assert engine.get_contradictions("bob", unresolved_only=True) == []

    def test_same_memory_id_keeps_separate_context(self, engine):
        engine.add_source_context(USER, "m1", SourceContext(project_id="X"))
        engine.add_source_context("bob", "m1", SourceContext(project_id="Y"))

        assert engine.get_source_context(USER, "m1").project_id == "X"
        assert engine.get_source_context("bob", "m1").project_id == "Y"

    def test_stats_forget_and_clear_per_user(self, engine, both_users):
        a, b, c, d = both_users

        engine.forget_memories("bob", [a.id])
        assert engine.get_source_context(USER, a.id) is not None
        assert engine.get_cross_project_stats(USER).unresolved_contradictions == 1

        engine.clear("bob")

        assert engine.get_cross_project_stats("bob").memories_with_context == 0
        assert engine.get_cross_project_stats(USER).memories_with_context == 2
        assert len(engine.get_contradictions(USER)) == 1
