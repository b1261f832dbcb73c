"""
Embedding utilities. Text-to-vector generation is supplied by the caller through
IEmbeddingProvider; this module only ships a deterministic provider for tests
and the similarity math used by cross-project reasoning.
"""

from abc import ABC, abstractmethod
import hashlib
from typing import Callable, Sequence

import numpy as np


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    def embed_text(self, text: str) -> list[float]:
        """Generate embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass


class CallableEmbeddingProvider(IEmbeddingProvider):
    """Adapts a plain ``text -> vector`` function to IEmbeddingProvider."""

    def __init__(self, func: Callable[[str], Sequence[float]], dimension: int):
        self.func = func
        self.dimension = dimension

    def embed_text(self, text: str) -> list[float]:
        embedding = [float(v) for v in self.func(text)]
        if len(embedding) != self.dimension:
            raise ValueError(f"Embedding dimension {len(embedding)} does not match expected dimension {self.dimension}")
        return embedding

    def get_dimension(self) -> int:
        return self.dimension


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for testing purposes.

    The same text always maps to the same unit vector, with no model
    dependency. Unrelated texts land roughly orthogonal.
    """

    def __init__(self, dimension: int = 1536):
        self.dimension = dimension

    def embed_text(self, text: str) -> list[float]:
        """Generate deterministic embedding vector using hash function."""
        # Expand SHA-256 in counter mode until there are enough bytes
        needed = self.dimension * 4
        stream = bytearray()
        counter = 0
        while len(stream) < needed:
            stream.extend(hashlib.sha256(f"{counter}:{text}".encode()).digest())
            counter += 1

        raw = np.frombuffer(bytes(stream[:needed]), dtype=np.uint32).astype(np.float64)
        # Map to [-1, 1] then normalize to unit length
        vector = (raw / 2**32) * 2 - 1
        norm = np.linalg.norm(vector)
        if norm == 0:
            return [0.0] * self.dimension
        return (vector / norm).tolist()

    def get_dimension(self) -> int:
        return self.dimension


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero magnitude."""
    if len(a) != len(b):
        raise ValueError("Embeddings must have the same length")

    vec_a = np.asarray(a, dtype=np.float64)
    vec_b = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(vec_a, vec_b) / (norm_a * norm_b))
