"""
Vector layer - per-user collections, similarity search and metadata schemas.
Embeddings and metadata are stored in the clear; content may be ciphertext.
"""

# Package initialization for vector module
from .types import (
    CollectionHandle,
    CollectionType,
    MemoryRecord,
    MetadataSchema,
    METADATA_SCHEMAS,
    QueryResult,
)
from .backends import IVectorBackend, InMemoryBackend, FaissBackend, matches_where
from .metadata import serialize_metadata, deserialize_metadata
from .embeddings import IEmbeddingProvider, CallableEmbeddingProvider, DeterministicHashEmbedding, cosine_similarity
from .client import CollectionRegistry, VectorStoreClient, VectorStoreConfig, VectorStoreError, sanitize_user_id

__all__ = [
    'CollectionHandle',
    'CollectionType',
    'MemoryRecord',
    'MetadataSchema',
    'METADATA_SCHEMAS',
    'QueryResult',
    'IVectorBackend',
    'InMemoryBackend',
    'FaissBackend',
    'matches_where',
    'serialize_metadata',
    'deserialize_metadata',
    'IEmbeddingProvider',
    'CallableEmbeddingProvider',
    'DeterministicHashEmbedding',
    'cosine_similarity',
    'CollectionRegistry',
    'VectorStoreClient',
    'VectorStoreConfig',
    'VectorStoreError',
    'sanitize_user_id'
]
