"""
Cross-project reasoning - provenance tagging, cross-project queries, cross
reference discovery and contradiction detection over one user's semantic memories.
Scores are cosine similarities between plaintext embeddings.
"""

import logging
import threading
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations
from typing import Dict, List, Optional, Sequence, Set

from util.logging import logger as structured_logger

from ..vector.embeddings import IEmbeddingProvider, cosine_similarity
from ..vector.semantic_store import SemanticMemory, SemanticMemoryStore
from .config import (
    VAULT_CROSS_REFERENCE_FLOOR,
    VAULT_OTHER_PROJECT_FLOOR,
    VAULT_QUERY_RELEVANCE_FLOOR,
    VAULT_SUPPORTS_FLOOR,
)
from .contradiction_rules import ContradictionRules, check_contradiction, extract_claim
from .schemas import (
    ContradictionDetection,
    CrossProjectQueryOptions,
    CrossProjectStats,
    CrossReference,
    SourceContext,
)

logger = logging.getLogger(__name__)

RESOLUTIONS = ('dismissed', 'superseded', 'merged')


@dataclass
class CrossProjectConfig:
    query_relevance_floor: float = VAULT_QUERY_RELEVANCE_FLOOR   # results must score above this
    other_project_floor: float = VAULT_OTHER_PROJECT_FLOOR
    cross_reference_floor: float = VAULT_CROSS_REFERENCE_FLOOR
    supports_floor: float = VAULT_SUPPORTS_FLOOR
    rules: ContradictionRules = field(default_factory=ContradictionRules)


@dataclass
class MemoryWithContext:
    memory: SemanticMemory
    source_context: SourceContext
    cross_references: List[CrossReference] = field(default_factory=list)

    @property
    def project_id(self) -> Optional[str]:
        return self.source_context.project_id


@dataclass
class ScoredMemory:
    memory: MemoryWithContext
    relevance: float
    project: Optional[str] = None


@dataclass
class CrossProjectQueryResult:
    memories: List[ScoredMemory]
    common_themes: List[str]
    contradictions: List[ContradictionDetection]
    project_summaries: Dict[str, str]


class CrossProjectEngine:
    """
    Relationship and contradiction discovery across a user's projects.

    Source contexts, cross references and detected contradictions live in side
    tables partitioned by user and keyed by memory id within a user. The
    memories themselves stay in the semantic store.
    """

    def __init__(self, semantic_store: SemanticMemoryStore, embedding_provider: IEmbeddingProvider,
                 config: Optional[CrossProjectConfig] = None):
        self.semantic_store = semantic_store
        self.embedding_provider = embedding_provider
        self.config = config or CrossProjectConfig()
        self._source_contexts: Dict[str, Dict[str, SourceContext]] = defaultdict(dict)
        self._cross_references: Dict[str, Dict[str, List[CrossReference]]] = defaultdict(dict)
        self._contradictions: Dict[str, List[ContradictionDetection]] = defaultdict(list)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Provenance
    # ------------------------------------------------------------------

    def add_source_context(self, user_id: str, memory_id: str, context: SourceContext) -> None:
        with self._lock:
            self._source_contexts[user_id][memory_id] = context

    def get_source_context(self, user_id: str, memory_id: str) -> Optional[SourceContext]:
        with self._lock:
            return self._source_contexts.get(user_id, {}).get(memory_id)

    def add_cross_reference(self, user_id: str, memory_id: str, reference: CrossReference) -> None:
        with self._lock:
            self._cross_references[user_id].setdefault(memory_id, []).append(reference)

    def get_cross_references(self, user_id: str, memory_id: str) -> List[CrossReference]:
        with self._lock:
            return list(self._cross_references.get(user_id, {}).get(memory_id, []))

    def _project_of(self, memory: SemanticMemory) -> Optional[str]:
        context = self.get_source_context(memory.user_id, memory.id)
        return context.project_id if context else None

    def _has_context(self, memory: SemanticMemory) -> bool:
        return self.get_source_context(memory.user_id, memory.id) is not None

    def enrich_with_context(self, memory: SemanticMemory) -> MemoryWithContext:
        context = (self.get_source_context(memory.user_id, memory.id)
                   or SourceContext(interface='web', timestamp=memory.created_at))
        return MemoryWithContext(memory=memory, source_context=context,
                                 cross_references=self.get_cross_references(memory.user_id, memory.id))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _score(self, query_embedding: Sequence[float], memories: Sequence[SemanticMemory],
               floor: float) -> List[ScoredMemory]:
        scored = []
        for memory in memories:
            if len(memory.embedding) != len(query_embedding):
                logger.warning(f"Skipping memory {memory.id}: embedding dimension mismatch")
                continue
            relevance = cosine_similarity(query_embedding, memory.embedding)
            if relevance > floor:
                enriched = self.enrich_with_context(memory)
                scored.append(ScoredMemory(memory=enriched, relevance=relevance, project=enriched.project_id))
        scored.sort(key=lambda s: s.relevance, reverse=True)
        return scored

    def query_cross_project(self, options: CrossProjectQueryOptions) -> CrossProjectQueryResult:
        """Rank a user's memories against a query across projects."""
        query_embedding = self.embedding_provider.embed_text(options.query)
        memories = self.semantic_store.get_all_memories(options.user_id)

        if options.time_range is not None:
            memories = [m for m in memories if options.time_range.contains(m.created_at)]

        if options.project_ids:
            wanted = set(options.project_ids)
            memories = [
                m for m in memories
                if self._has_context(m) and (self._project_of(m) or '') in wanted
            ]

        top_results = self._score(query_embedding, memories, self.config.query_relevance_floor)[:options.limit]
        enriched = [r.memory for r in top_results]

        contradictions = self.detect_contradictions(enriched) if options.detect_contradictions else []

        structured_logger.log_operation("cross_project.query", "success", {
            "candidates": len(memories),
            "results": len(top_results),
            "contradictions": len(contradictions),
        })

        return CrossProjectQueryResult(
            memories=top_results,
            common_themes=extract_common_themes(enriched),
            contradictions=contradictions,
            project_summaries=generate_project_summaries(top_results),
        )

    def find_related_from_other_projects(self, user_id: str, current_project_id: str, query: str,
                                         limit: int = 5) -> List[MemoryWithContext]:
        """Memories from other projects, held to a stricter relevance floor."""
        query_embedding = self.embedding_provider.embed_text(query)
        memories = [
            m for m in self.semantic_store.get_all_memories(user_id)
            if self._has_context(m) and self._project_of(m) != current_project_id
        ]
        scored = self._score(query_embedding, memories, self.config.other_project_floor)
        return [s.memory for s in scored[:limit]]

    # ------------------------------------------------------------------
    # Contradictions
    # ------------------------------------------------------------------

    def detect_contradictions(self, memories: Sequence[MemoryWithContext]) -> List[ContradictionDetection]:
        """
        Pairwise contradiction test within each shared topic, across projects.

        A pair that fails to evaluate is logged and skipped. Detections are added
        to the ledger once per unordered pair and topic.
        """
        by_topic: Dict[str, List[MemoryWithContext]] = defaultdict(list)
        for enriched in memories:
            for topic in enriched.memory.topics:
                by_topic[topic].append(enriched)

        detections: List[ContradictionDetection] = []
        for topic, group in by_topic.items():
            for mem_a, mem_b in combinations(group, 2):
                if mem_a.project_id == mem_b.project_id:
                    continue
                try:
                    detection = self._check_pair(topic, mem_a.memory, mem_b.memory)
                except Exception as e:
                    logger.warning(f"Contradiction check failed for {mem_a.memory.id}/{mem_b.memory.id}: {e}")
                    continue
                if detection is not None:
                    detections.append(self._record(detection))

        return detections

    def _check_pair(self, topic: str, mem_a: SemanticMemory, mem_b: SemanticMemory) -> Optional[ContradictionDetection]:
        similarity = cosine_similarity(mem_a.embedding, mem_b.embedding)
        check = check_contradiction(mem_a.content, mem_b.content, similarity, self.config.rules)
        if not check.is_contradiction:
            return None

        return ContradictionDetection(
            user_id=mem_a.user_id,
            memory_id=mem_a.id,
            contradicting_memory_id=mem_b.id,
            topic=topic,
            claim_a=extract_claim(mem_a.content),
            claim_b=extract_claim(mem_b.content),
            confidence=check.confidence,
        )

    def _record(self, detection: ContradictionDetection) -> ContradictionDetection:
        with self._lock:
            ledger = self._contradictions[detection.user_id]
            for existing in ledger:
                if existing.topic == detection.topic and existing.involves(detection.memory_id,
                                                                           detection.contradicting_memory_id):
                    return existing
            ledger.append(detection)

        structured_logger.log_contradiction(detection.memory_id, detection.contradicting_memory_id,
                                            detection.topic, detection.confidence)
        return detection

    def get_contradictions(self, user_id: str, unresolved_only: bool = False) -> List[ContradictionDetection]:
        with self._lock:
            return [c for c in self._contradictions.get(user_id, []) if not (unresolved_only and c.is_resolved)]

    def resolve_contradiction(self, user_id: str, memory_id: str, contradicting_memory_id: str,
                              resolution: str) -> bool:
        """
        Resolve every open detection between the user's two memories.

        Resolved detections are terminal. A ``superseded`` resolution marks
        ``memory_id`` as superseding ``contradicting_memory_id`` in the semantic store.
        """
        if resolution not in RESOLUTIONS:
            raise ValueError(f"resolution must be one of: {list(RESOLUTIONS)}")

        with self._lock:
            open_matches = [
                c for c in self._contradictions.get(user_id, [])
                if not c.is_resolved and c.involves(memory_id, contradicting_memory_id)
            ]
            now = datetime.now()
            for detection in open_matches:
                detection.resolved_at = now
                detection.resolution = resolution

        if not open_matches:
            return False

        if resolution == 'superseded':
            self.semantic_store.mark_supersession(user_id, memory_id, contradicting_memory_id)

        structured_logger.log_operation("cross_project.resolve", "success", {
            "memory_id": memory_id,
            "contradicting_memory_id": contradicting_memory_id,
            "resolution": resolution,
        })
        return True

    # ------------------------------------------------------------------
    # Cross references
    # ------------------------------------------------------------------

    def classify_relationship(self, memory: SemanticMemory, other: SemanticMemory, similarity: float) -> str:
        if other.id in memory.contradicts:
            return 'contradicts'
        if other.id in memory.supersedes:
            return 'extends'
        if similarity > self.config.supports_floor:
            return 'supports'
        return 'related'

    def discover_cross_references(self, user_id: str, memory_id: str) -> List[CrossReference]:
        """Link a memory to every other memory of the user above the cross-reference floor."""
        memories = self.semantic_store.get_all_memories(user_id)
        memory = next((m for m in memories if m.id == memory_id), None)
        if memory is None:
            return []

        references = []
        for other in memories:
            if other.id == memory_id:
                continue
            try:
                similarity = cosine_similarity(memory.embedding, other.embedding)
            except ValueError as e:
                logger.warning(f"Cross-reference check failed for {memory_id}/{other.id}: {e}")
                continue
            if similarity <= self.config.cross_reference_floor:
                continue

            references.append(CrossReference(
                target_memory_id=other.id,
                target_project_id=self._project_of(other),
                relationship_type=self.classify_relationship(memory, other, similarity),
                strength=max(-1.0, min(1.0, similarity)),
                discovered_by='system',
            ))

        with self._lock:
            self._cross_references[user_id][memory_id] = references

        structured_logger.log_operation("cross_project.discover", "success",
                                        {"memory_id": memory_id, "references": len(references)})
        return references

    def discover_all(self, user_id: str) -> int:
        """Offline pass: cross references for every memory, then contradictions. Returns references found."""
        memories = self.semantic_store.get_all_memories(user_id)
        total = sum(len(self.discover_cross_references(user_id, m.id)) for m in memories)
        self.detect_contradictions([self.enrich_with_context(m) for m in memories])
        return total

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def forget_memories(self, user_id: str, memory_ids: Sequence[str]) -> None:
        """Drop a user's side-table entries for erased memories."""
        ids: Set[str] = set(memory_ids)
        with self._lock:
            contexts = self._source_contexts.get(user_id, {})
            references = self._cross_references.get(user_id, {})
            for memory_id in ids:
                contexts.pop(memory_id, None)
                references.pop(memory_id, None)
            for refs_key in list(references):
                references[refs_key] = [r for r in references[refs_key] if r.target_memory_id not in ids]
            if user_id in self._contradictions:
                self._contradictions[user_id] = [
                    c for c in self._contradictions[user_id]
                    if c.memory_id not in ids and c.contradicting_memory_id not in ids
                ]

    def get_cross_project_stats(self, user_id: str) -> CrossProjectStats:
        with self._lock:
            return CrossProjectStats(
                memories_with_context=len(self._source_contexts.get(user_id, {})),
                total_cross_references=sum(len(refs) for refs in self._cross_references.get(user_id, {}).values()),
                unresolved_contradictions=sum(1 for c in self._contradictions.get(user_id, []) if not c.is_resolved),
            )

    def clear(self, user_id: Optional[str] = None) -> None:
        """Drop one user's side tables, or every user's when ``user_id`` is None."""
        with self._lock:
            if user_id is None:
                self._source_contexts.clear()
                self._cross_references.clear()
                self._contradictions.clear()
                return
            self._source_contexts.pop(user_id, None)
            self._cross_references.pop(user_id, None)
            self._contradictions.pop(user_id, None)


def extract_common_themes(memories: Sequence[MemoryWithContext]) -> List[str]:
    """Topics appearing in at least two memories, most frequent first."""
    counts = Counter(topic for m in memories for topic in m.memory.topics)
    return [topic for topic, count in counts.most_common() if count >= 2]


def generate_project_summaries(results: Sequence[ScoredMemory]) -> Dict[str, str]:
    by_project: Dict[str, List[MemoryWithContext]] = defaultdict(list)
    for result in results:
        by_project[result.project or 'unassigned'].append(result.memory)

    summaries = {}
    for project_id, memories in by_project.items():
        topics: List[str] = []
        for m in memories:
            for topic in m.memory.topics:
                if topic not in topics:
                    topics.append(topic)
        topic_list = ', '.join(topics[:5])
        summaries[project_id] = f"{len(memories)} relevant memories. Topics: {topic_list or 'none'}"
    return summaries
