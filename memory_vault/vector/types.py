"""
Vector store types - collection categories, records and metadata schemas.
Embeddings and metadata are stored in the clear; content may be ciphertext.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

MetadataValue = Union[str, int, float, bool]


class CollectionType(str, Enum):
    """Memory category held by a collection."""
    SEMANTIC = "semantic"
    EPISODIC = "episodic"
    PROCEDURAL = "procedural"


@dataclass(frozen=True)
class MetadataSchema:
    """Field names that need type restoration when read back from the backend."""
    dates: Tuple[str, ...] = ()
    arrays: Tuple[str, ...] = ()
    objects: Tuple[str, ...] = ()


SEMANTIC_METADATA_SCHEMA = MetadataSchema(
    dates=("created_at", "last_accessed_at", "source_timestamp"),
    arrays=("topics", "related_memory_ids", "contradicts", "supersedes"),
    objects=("source",),
)

EPISODIC_METADATA_SCHEMA = MetadataSchema(
    dates=("started_at", "ended_at", "timestamp", "created_at"),
    arrays=("topics", "conversation_ids", "entities", "commitments", "messages", "tool_calls"),
    objects=("metadata",),
)

PROCEDURAL_METADATA_SCHEMA = MetadataSchema(
    dates=("created_at", "updated_at", "expires_at"),
    arrays=("rules", "instructions", "permissions"),
    objects=(),
)

METADATA_SCHEMAS: Dict[CollectionType, MetadataSchema] = {
    CollectionType.SEMANTIC: SEMANTIC_METADATA_SCHEMA,
    CollectionType.EPISODIC: EPISODIC_METADATA_SCHEMA,
    CollectionType.PROCEDURAL: PROCEDURAL_METADATA_SCHEMA,
}


@dataclass
class CollectionHandle:
    """Cached reference to a backend collection owned by one user."""
    name: str
    collection_type: CollectionType
    user_id: str
    metadata: Dict[str, MetadataValue]

    @property
    def schema(self) -> MetadataSchema:
        return METADATA_SCHEMAS[self.collection_type]


@dataclass
class QueryResult:
    """A record returned by the vector store."""

    id: str
    """Identifier of the matching record"""

    content: str
    """Stored content (ciphertext bundle when the record is encrypted)"""

    metadata: Dict[str, object]
    """Metadata with schema types restored"""

    embedding: Optional[List[float]] = None
    """Embedding, when requested"""

    distance: Optional[float] = None
    """Squared L2 distance to the query embedding (ranked queries only)"""


@dataclass
class MemoryRecord:
    """A memory as owned by the vector store backend."""
    id: str
    content: str
    embedding: Optional[List[float]]
    metadata: Dict[str, object]
    collection_type: CollectionType
    user_id: str
    created_at: datetime = field(default_factory=datetime.now)
