"""
Vector search backends - the similarity-search engine behind VectorStoreClient.
Backends hold named collections of (id, document, embedding, metadata) records
and rank by squared L2 distance.
"""

import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .types import MetadataValue, QueryResult


def matches_where(metadata: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    """Match stored metadata against a filter with $eq/$ne/$gt/$gte/$lt/$lte/$in/$nin/$and/$or."""
    if not where:
        return True

    for key, condition in where.items():
        if key == "$and":
            if not all(matches_where(metadata, clause) for clause in condition):
                return False
            continue
        if key == "$or":
            if not any(matches_where(metadata, clause) for clause in condition):
                return False
            continue

        value = metadata.get(key)

        if isinstance(condition, dict):
            if "$eq" in condition and value != condition["$eq"]:
                return False
            if "$ne" in condition and value == condition["$ne"]:
                return False
            for op, check in (("$gt", lambda v, c: v > c), ("$gte", lambda v, c: v >= c),
                              ("$lt", lambda v, c: v < c), ("$lte", lambda v, c: v <= c)):
                if op in condition:
                    if not isinstance(value, (int, float)) or isinstance(value, bool):
                        return False
                    if not check(value, condition[op]):
                        return False
            if "$in" in condition and value not in condition["$in"]:
                return False
            if "$nin" in condition and value in condition["$nin"]:
                return False
        elif value != condition:
            return False

    return True


class IVectorBackend(ABC):
    """Abstract interface for a collection-oriented similarity-search engine."""

    @abstractmethod
    def heartbeat(self) -> int:
        """Verify the backend is reachable. Raises if it is not."""
        pass

    @abstractmethod
    def create_collection(self, name: str, metadata: Dict[str, MetadataValue], get_or_create: bool = True) -> Dict[str, MetadataValue]:
        """Create a collection, or return the existing one's metadata when get_or_create is set."""
        pass

    @abstractmethod
    def get_collection(self, name: str) -> Dict[str, MetadataValue]:
        """Return a collection's metadata. Raises KeyError if it does not exist."""
        pass

    @abstractmethod
    def delete_collection(self, name: str) -> None:
        pass

    @abstractmethod
    def list_collections(self) -> List[str]:
        pass

    @abstractmethod
    def add(self, name: str, ids: Sequence[str], documents: Sequence[str],
            embeddings: Optional[Sequence[Sequence[float]]], metadatas: Sequence[Dict[str, MetadataValue]]) -> None:
        """Add new records. Raises ValueError on duplicate ids."""
        pass

    @abstractmethod
    def update(self, name: str, ids: Sequence[str], documents: Sequence[str],
               embeddings: Optional[Sequence[Sequence[float]]], metadatas: Sequence[Dict[str, MetadataValue]]) -> None:
        """Update existing records. Raises KeyError on unknown ids."""
        pass

    @abstractmethod
    def upsert(self, name: str, ids: Sequence[str], documents: Sequence[str],
               embeddings: Optional[Sequence[Sequence[float]]], metadatas: Sequence[Dict[str, MetadataValue]]) -> None:
        """Insert or replace records. Stored metadata is replaced, not merged."""
        pass

    @abstractmethod
    def delete(self, name: str, ids: Sequence[str]) -> None:
        pass

    @abstractmethod
    def get(self, name: str, ids: Optional[Sequence[str]] = None, where: Optional[Dict[str, Any]] = None,
            limit: Optional[int] = None, offset: Optional[int] = None, include_embeddings: bool = True) -> List[QueryResult]:
        """Unranked lookup by id and/or metadata filter, in insertion order."""
        pass

    @abstractmethod
    def query(self, name: str, embedding: Sequence[float], n_results: int,
              where: Optional[Dict[str, Any]] = None, include_embeddings: bool = False) -> List[QueryResult]:
        """Nearest neighbours ordered by ascending distance."""
        pass

    @abstractmethod
    def count(self, name: str) -> int:
        pass

    @abstractmethod
    def reset(self) -> None:
        """Drop every collection."""
        pass


@dataclass
class _StoredRecord:
    document: str
    embedding: Optional[np.ndarray]
    metadata: Dict[str, MetadataValue]


@dataclass
class _Collection:
    metadata: Dict[str, MetadataValue]
    records: "OrderedDict[str, _StoredRecord]" = field(default_factory=OrderedDict)


def _to_vector(embedding: Optional[Sequence[float]]) -> Optional[np.ndarray]:
    if embedding is None or len(embedding) == 0:
        return None
    return np.asarray(embedding, dtype=np.float32)


class InMemoryBackend(IVectorBackend):
    """Process-local backend using exact numpy distance computation."""

    def __init__(self):
        self._collections: Dict[str, _Collection] = {}
        self._lock = threading.RLock()

    def heartbeat(self) -> int:
        return len(self._collections)

    def _collection(self, name: str) -> _Collection:
        try:
            return self._collections[name]
        except KeyError:
            raise KeyError(f"Collection {name} does not exist")

    def create_collection(self, name, metadata, get_or_create=True):
        with self._lock:
            if name in self._collections:
                if not get_or_create:
                    raise ValueError(f"Collection {name} already exists")
                return dict(self._collections[name].metadata)
            self._collections[name] = _Collection(metadata=dict(metadata))
            return dict(metadata)

    def get_collection(self, name):
        with self._lock:
            return dict(self._collection(name).metadata)

    def delete_collection(self, name):
        with self._lock:
            self._collection(name)
            del self._collections[name]

    def list_collections(self):
        with self._lock:
            return list(self._collections.keys())

    def add(self, name, ids, documents, embeddings, metadatas):
        with self._lock:
            collection = self._collection(name)
            duplicates = [record_id for record_id in ids if record_id in collection.records]
            if duplicates:
                raise ValueError(f"Records already exist: {duplicates}")
            self._write(name, collection, ids, documents, embeddings, metadatas, merge_metadata=False)

    def update(self, name, ids, documents, embeddings, metadatas):
        with self._lock:
            collection = self._collection(name)
            missing = [record_id for record_id in ids if record_id not in collection.records]
            if missing:
                raise KeyError(f"Records not found: {missing}")
            self._write(name, collection, ids, documents, embeddings, metadatas, merge_metadata=True)

    def upsert(self, name, ids, documents, embeddings, metadatas):
        with self._lock:
            collection = self._collection(name)
            self._write(name, collection, ids, documents, embeddings, metadatas, merge_metadata=False)

    def _write(self, name, collection, ids, documents, embeddings, metadatas, merge_metadata):
        for i, record_id in enumerate(ids):
            vector = _to_vector(embeddings[i]) if embeddings is not None else None
            existing = collection.records.get(record_id)
            if existing is not None and vector is None:
                vector = existing.embedding
            if existing is not None and merge_metadata:
                metadata = {**existing.metadata, **metadatas[i]}
            else:
                metadata = dict(metadatas[i])
            collection.records[record_id] = _StoredRecord(documents[i], vector, metadata)

    def delete(self, name, ids):
        with self._lock:
            collection = self._collection(name)
            for record_id in ids:
                collection.records.pop(record_id, None)

    def get(self, name, ids=None, where=None, limit=None, offset=None, include_embeddings=True):
        with self._lock:
            collection = self._collection(name)
            if ids is not None:
                candidates = [(i, collection.records[i]) for i in ids if i in collection.records]
            else:
                candidates = list(collection.records.items())

            matched = [(i, r) for i, r in candidates if matches_where(r.metadata, where)]
            start = offset or 0
            end = start + limit if limit is not None else None
            return [self._result(i, r, include_embeddings) for i, r in matched[start:end]]

    def query(self, name, embedding, n_results, where=None, include_embeddings=False):
        with self._lock:
            collection = self._collection(name)
            query_vector = np.asarray(embedding, dtype=np.float32)

            candidates = [
                (record_id, record) for record_id, record in collection.records.items()
                if record.embedding is not None
                and record.embedding.shape == query_vector.shape
                and matches_where(record.metadata, where)
            ]
            if not candidates or n_results <= 0:
                return []

            matrix = np.vstack([record.embedding for _, record in candidates])
            distances = np.sum((matrix - query_vector) ** 2, axis=1)
            order = np.argsort(distances, kind="stable")[:n_results]

            return [
                self._result(candidates[i][0], candidates[i][1], include_embeddings, float(distances[i]))
                for i in order
            ]

    def count(self, name):
        with self._lock:
            return len(self._collection(name).records)

    def reset(self):
        with self._lock:
            self._collections.clear()

    @staticmethod
    def _result(record_id, record, include_embeddings, distance=None):
        embedding = None
        if include_embeddings and record.embedding is not None:
            embedding = record.embedding.tolist()
        return QueryResult(
            id=record_id,
            content=record.document,
            metadata=dict(record.metadata),
            embedding=embedding,
            distance=distance,
        )


class FaissBackend(InMemoryBackend):
    """FAISS-backed backend. Records and metadata stay in process; vectors live in
    one IndexIDMap2 over an exact L2 index per collection."""

    def __init__(self, dimension: int = 1536):
        super().__init__()
        try:
            import faiss
            self.faiss = faiss
        except ImportError:
            raise ImportError("FAISS not installed. Please install faiss-cpu package.")

        self.dimension = dimension
        self._indexes: Dict[str, Any] = {}
        self._faiss_ids: Dict[str, Dict[str, int]] = {}
        self._record_ids: Dict[str, Dict[int, str]] = {}
        self._next_id: Dict[str, int] = {}

    def _new_index(self):
        return self.faiss.IndexIDMap2(self.faiss.IndexFlatL2(self.dimension))

    def create_collection(self, name, metadata, get_or_create=True):
        with self._lock:
            result = super().create_collection(name, metadata, get_or_create)
            if name not in self._indexes:
                self._indexes[name] = self._new_index()
                self._faiss_ids[name] = {}
                self._record_ids[name] = {}
                self._next_id[name] = 0
            return result

    def delete_collection(self, name):
        with self._lock:
            super().delete_collection(name)
            for table in (self._indexes, self._faiss_ids, self._record_ids, self._next_id):
                table.pop(name, None)

    def _write(self, name, collection, ids, documents, embeddings, metadatas, merge_metadata):
        for i, record_id in enumerate(ids):
            vector = _to_vector(embeddings[i]) if embeddings is not None else None
            if vector is not None and vector.shape[0] != self.dimension:
                raise ValueError(f"Vector dimension {vector.shape[0]} does not match expected dimension {self.dimension}")
        super()._write(name, collection, ids, documents, embeddings, metadatas, merge_metadata)

        # Re-index every written record that carries a vector
        for record_id in ids:
            record = collection.records[record_id]
            self._remove_vector(name, record_id)
            if record.embedding is not None:
                faiss_id = self._next_id[name]
                self._next_id[name] += 1
                self._indexes[name].add_with_ids(
                    record.embedding.reshape(1, -1),
                    np.array([faiss_id], dtype=np.int64)
                )
                self._faiss_ids[name][record_id] = faiss_id
                self._record_ids[name][faiss_id] = record_id

    def _remove_vector(self, name: str, record_id: str) -> None:
        faiss_id = self._faiss_ids[name].pop(record_id, None)
        if faiss_id is not None:
            self._indexes[name].remove_ids(np.array([faiss_id], dtype=np.int64))
            self._record_ids[name].pop(faiss_id, None)

    def delete(self, name, ids):
        with self._lock:
            self._collection(name)
            for record_id in ids:
                self._remove_vector(name, record_id)
            super().delete(name, ids)

    def query(self, name, embedding, n_results, where=None, include_embeddings=False):
        with self._lock:
            collection = self._collection(name)
            index = self._indexes[name]
            if index.ntotal == 0 or n_results <= 0:
                return []

            query_array = np.asarray(embedding, dtype=np.float32).reshape(1, -1)
            if query_array.shape[1] != self.dimension:
                raise ValueError(f"Query dimension {query_array.shape[1]} does not match expected dimension {self.dimension}")

            # Filtered queries rank the whole index, then filter
            k = index.ntotal if where else min(n_results, index.ntotal)
            distances, faiss_ids = index.search(query_array, k)

            results = []
            for distance, faiss_id in zip(distances[0], faiss_ids[0]):
                if faiss_id < 0:
                    continue
                record_id = self._record_ids[name].get(int(faiss_id))
                if record_id is None:
                    continue
                record = collection.records[record_id]
                if not matches_where(record.metadata, where):
                    continue
                results.append(self._result(record_id, record, include_embeddings, float(distance)))
                if len(results) >= n_results:
                    break
            return results

    def reset(self):
        with self._lock:
            super().reset()
            self._indexes.clear()
            self._faiss_ids.clear()
            self._record_ids.clear()
            self._next_id.clear()
