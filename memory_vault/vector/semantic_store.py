"""
Semantic memory accessor - typed facts per user on top of the semantic collection.
Content goes through the encrypted store; topics and relationship links stay in
plaintext metadata so they can be filtered and reasoned over.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from util.logging import logger as structured_logger

from ..encryption.encrypted_store import EncryptedStore, VaultDocument
from .client import VectorStoreClient
from .types import CollectionHandle, CollectionType

logger = logging.getLogger(__name__)

MEMORY_CATEGORIES = (
    "personal_info",
    "business_info",
    "relationships",
    "projects",
    "preferences",
    "domain_knowledge",
    "decisions",
    "commitments",
)


@dataclass
class SemanticMemory:
    """A single fact or decision remembered for a user."""
    id: str
    user_id: str
    content: str
    embedding: List[float]
    category: str = "domain_knowledge"
    created_at: datetime = field(default_factory=datetime.now)
    last_accessed_at: datetime = field(default_factory=datetime.now)
    access_count: int = 0
    utility_score: float = 0.5
    confidence: float = 1.0
    topics: List[str] = field(default_factory=list)
    related_memory_ids: List[str] = field(default_factory=list)
    contradicts: List[str] = field(default_factory=list)
    supersedes: List[str] = field(default_factory=list)
    source: Dict[str, Any] = field(default_factory=dict)

    def to_document(self) -> VaultDocument:
        return VaultDocument(
            id=self.id,
            content=self.content,
            embedding=list(self.embedding) if self.embedding else None,
            metadata={
                "category": self.category,
                "created_at": self.created_at,
                "last_accessed_at": self.last_accessed_at,
                "access_count": self.access_count,
                "utility_score": self.utility_score,
                "confidence": self.confidence,
                "topics": list(self.topics),
                "related_memory_ids": list(self.related_memory_ids),
                "contradicts": list(self.contradicts),
                "supersedes": list(self.supersedes),
                "source": dict(self.source),
            },
        )

    @classmethod
    def from_document(cls, user_id: str, document: VaultDocument) -> "SemanticMemory":
        metadata = document.metadata
        return cls(
            id=document.id,
            user_id=user_id,
            content=document.content,
            embedding=list(document.embedding or []),
            category=metadata.get("category", "domain_knowledge"),
            created_at=_as_datetime(metadata.get("created_at")),
            last_accessed_at=_as_datetime(metadata.get("last_accessed_at")),
            access_count=int(metadata.get("access_count", 0)),
            utility_score=float(metadata.get("utility_score", 0.5)),
            confidence=float(metadata.get("confidence", 1.0)),
            topics=list(metadata.get("topics") or []),
            related_memory_ids=list(metadata.get("related_memory_ids") or []),
            contradicts=list(metadata.get("contradicts") or []),
            supersedes=list(metadata.get("supersedes") or []),
            source=dict(metadata.get("source") or {}),
        )


def _as_datetime(value) -> datetime:
    return value if isinstance(value, datetime) else datetime.now()


class SemanticMemoryStore:
    """Per-user CRUD over semantic memories, with content encrypted at rest."""

    def __init__(self, client: VectorStoreClient, encrypted_store: EncryptedStore):
        self.client = client
        self.encrypted_store = encrypted_store

    def collection(self, user_id: str) -> CollectionHandle:
        return self.client.get_or_create_collection(CollectionType.SEMANTIC, user_id)

    def create_memory(self, user_id: str, content: str, embedding: Sequence[float],
                      category: str = "domain_knowledge", topics: Sequence[str] = (),
                      source: Optional[Dict[str, Any]] = None, confidence: float = 1.0,
                      memory_id: Optional[str] = None) -> SemanticMemory:
        if category not in MEMORY_CATEGORIES:
            raise ValueError(f"Unknown memory category: {category}")

        memory = SemanticMemory(
            id=memory_id or f"mem_{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            content=content,
            embedding=[float(v) for v in embedding],
            category=category,
            confidence=confidence,
            topics=[t.lower() for t in topics],
            source=dict(source or {}),
        )
        self.save_memory(memory)
        structured_logger.log_operation("semantic.create", "success",
                                        {"memory_id": memory.id, "topics": len(memory.topics)})
        return memory

    def save_memory(self, memory: SemanticMemory) -> None:
        """Write the whole memory back, re-encrypting its content under the active key."""
        self.encrypted_store.store_documents(self.collection(memory.user_id), [memory.to_document()])

    def get_memory(self, user_id: str, memory_id: str) -> Optional[SemanticMemory]:
        documents = self.encrypted_store.load_documents(self.collection(user_id), [memory_id])
        return SemanticMemory.from_document(user_id, documents[0]) if documents else None

    def get_all_memories(self, user_id: str, where: Optional[Dict[str, Any]] = None) -> List[SemanticMemory]:
        documents = self.encrypted_store.load_all(self.collection(user_id), where=where)
        return [SemanticMemory.from_document(user_id, d) for d in documents]

    def query(self, user_id: str, embedding: Sequence[float], limit: int = 10,
              where: Optional[Dict[str, Any]] = None) -> List[Tuple[SemanticMemory, float]]:
        """Nearest memories with their distances, closest first."""
        documents = self.encrypted_store.query(self.collection(user_id), embedding, limit=limit,
                                               where=where, include_embeddings=True)
        return [(SemanticMemory.from_document(user_id, d), d.distance) for d in documents]

    def record_access(self, user_id: str, memory_id: str) -> Optional[SemanticMemory]:
        memory = self.get_memory(user_id, memory_id)
        if memory is None:
            return None
        memory.access_count += 1
        memory.last_accessed_at = datetime.now()
        self.save_memory(memory)
        return memory

    def _link(self, user_id: str, memory_id: str, field_name: str, other_id: str) -> Optional[SemanticMemory]:
        memory = self.get_memory(user_id, memory_id)
        if memory is None:
            return None
        links = getattr(memory, field_name)
        if other_id not in links:
            links.append(other_id)
            self.save_memory(memory)
        return memory

    def mark_contradiction(self, user_id: str, memory_id: str, contradicts_id: str) -> Optional[SemanticMemory]:
        return self._link(user_id, memory_id, "contradicts", contradicts_id)

    def mark_supersession(self, user_id: str, memory_id: str, supersedes_id: str) -> Optional[SemanticMemory]:
        """Record that ``memory_id`` supersedes ``supersedes_id``. Nothing is deleted."""
        memory = self._link(user_id, memory_id, "supersedes", supersedes_id)
        if memory is not None:
            structured_logger.log_operation("semantic.supersession", "success",
                                            {"memory_id": memory_id, "supersedes": supersedes_id})
        return memory

    def link_memories(self, user_id: str, memory_id: str, related_id: str) -> Optional[SemanticMemory]:
        return self._link(user_id, memory_id, "related_memory_ids", related_id)

    def get_contradictions(self, user_id: str, memory_id: str) -> List[SemanticMemory]:
        memories = self.get_all_memories(user_id)
        target = next((m for m in memories if m.id == memory_id), None)
        return [
            m for m in memories
            if m.id != memory_id and (memory_id in m.contradicts or (target and m.id in target.contradicts))
        ]

    def get_superseded(self, user_id: str) -> List[SemanticMemory]:
        memories = self.get_all_memories(user_id)
        superseded_ids = {s for m in memories for s in m.supersedes}
        return [m for m in memories if m.id in superseded_ids]

    def delete_memory(self, user_id: str, memory_id: str) -> None:
        self.client.delete(self.collection(user_id), [memory_id])

    def delete_all_memories(self, user_id: str) -> int:
        handle = self.collection(user_id)
        ids = [r.id for r in self.client.query_all(handle, include_embeddings=False)]
        self.client.delete(handle, ids)
        return len(ids)
