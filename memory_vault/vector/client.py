"""
Vector store client - per-user collection isolation, batch CRUD and ranked queries
over a pluggable IVectorBackend. Construct one client at startup and pass it to
the components that need it.
"""

import hashlib
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from util.logging import logger as structured_logger

from ..core.config import (
    VAULT_COLLECTION_PREFIX,
    VAULT_COLLECTION_VERSION,
    VAULT_EMBED_DIM,
    VAULT_QUERY_TIMEOUT_SEC,
    VAULT_VECTOR_BACKEND,
    create_vector_backend,
)
from .backends import IVectorBackend
from .metadata import deserialize_metadata, serialize_metadata
from .types import CollectionHandle, CollectionType, QueryResult

logger = logging.getLogger(__name__)

VECTOR_ERROR_CODES = (
    "INIT_FAILED",
    "NOT_INITIALIZED",
    "COLLECTION_NOT_FOUND",
    "COLLECTION_EXISTS",
    "QUERY_FAILED",
    "INSERT_FAILED",
    "UPDATE_FAILED",
    "DELETE_FAILED",
    "CONNECTION_LOST",
)


class VectorStoreError(Exception):
    """Failure of a vector store operation, tagged with a fixed code."""

    def __init__(self, message: str, code: str, cause: Optional[BaseException] = None):
        if code not in VECTOR_ERROR_CODES:
            raise ValueError(f"Unknown vector store error code: {code}")
        super().__init__(message)
        self.code = code
        self.cause = cause


@contextmanager
def vector_errors(code: str, message: str) -> Iterator[None]:
    """Convert backend exceptions into VectorStoreError with the given code."""
    try:
        yield
    except VectorStoreError:
        raise
    except Exception as e:
        raise VectorStoreError(f"{message}: {e}", code, e) from e


@dataclass
class VectorStoreConfig:
    """Connection and naming settings for the vector store."""
    collection_prefix: str = VAULT_COLLECTION_PREFIX
    embedding_dimensions: int = VAULT_EMBED_DIM
    query_timeout_sec: Optional[float] = VAULT_QUERY_TIMEOUT_SEC
    backend: str = VAULT_VECTOR_BACKEND


class CollectionRegistry:
    """In-process cache of collection handles keyed by collection name.
    Entries are only invalidated by explicit remove/clear calls."""

    def __init__(self):
        self._handles: Dict[str, CollectionHandle] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Optional[CollectionHandle]:
        with self._lock:
            return self._handles.get(name)

    def put(self, handle: CollectionHandle) -> CollectionHandle:
        with self._lock:
            return self._handles.setdefault(handle.name, handle)

    def remove(self, name: str) -> None:
        with self._lock:
            self._handles.pop(name, None)

    def clear(self) -> None:
        with self._lock:
            self._handles.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


def sanitize_user_id(user_id: str) -> str:
    """
    Make a user id safe for collection names.

    The readable part is truncated, so a short digest of the raw id is appended
    to keep distinct users in distinct collections.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9]", "_", user_id)
    if not re.match(r"^[a-zA-Z0-9]", sanitized):
        sanitized = f"u{sanitized}"
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:8]
    return f"{sanitized[:32]}_{digest}"


class VectorStoreClient:
    """Typed CRUD and similarity search over per-user memory collections."""

    def __init__(self, backend: Optional[IVectorBackend] = None, config: Optional[VectorStoreConfig] = None,
                 registry: Optional[CollectionRegistry] = None):
        self.config = config or VectorStoreConfig()
        self._backend = backend
        self.registry = registry or CollectionRegistry()
        self._initialized = False
        self._init_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def initialize(self, config: Optional[VectorStoreConfig] = None) -> "VectorStoreClient":
        """Connect to the backend. Idempotent once connected."""
        with self._init_lock:
            if self._initialized:
                return self
            if config is not None:
                self.config = config

            try:
                if self._backend is None:
                    self._backend = create_vector_backend(self.config.backend, self.config.embedding_dimensions)
                self._backend.heartbeat()
            except Exception as e:
                self._initialized = False
                structured_logger.log_operation("vector.initialize", "failed", {"error": str(e)})
                raise VectorStoreError(f"Failed to initialize vector store: {e}", "INIT_FAILED", e) from e

            self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="vault-query")
            self._initialized = True
            structured_logger.log_operation("vector.initialize", "success",
                                            {"backend": type(self._backend).__name__})
            return self

    @property
    def is_initialized(self) -> bool:
        return self._initialized and self._backend is not None

    @property
    def backend(self) -> IVectorBackend:
        if not self.is_initialized:
            raise VectorStoreError(
                "Vector store not initialized. Call initialize() first.",
                "NOT_INITIALIZED"
            )
        return self._backend

    def check_health(self) -> bool:
        """Return True when the backend answers a heartbeat."""
        if not self.is_initialized:
            return False
        try:
            self._backend.heartbeat()
            return True
        except Exception as e:
            logger.warning(f"Vector store heartbeat failed: {e}")
            return False

    def reset(self) -> None:
        """Drop all collections and return to the uninitialized state (tests)."""
        if self._backend is not None and self._initialized:
            with vector_errors("DELETE_FAILED", "Failed to reset vector store"):
                self._backend.reset()
        self.registry.clear()
        self.disconnect()

    def disconnect(self) -> None:
        self._initialized = False
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    def build_collection_name(self, collection_type: CollectionType, user_id: str) -> str:
        """Deterministic collection name for (type, user)."""
        collection_type = CollectionType(collection_type)
        return f"{self.config.collection_prefix}{collection_type.value}_{sanitize_user_id(user_id)}"

    def get_or_create_collection(self, collection_type: CollectionType, user_id: str) -> CollectionHandle:
        collection_type = CollectionType(collection_type)
        name = self.build_collection_name(collection_type, user_id)

        cached = self.registry.get(name)
        if cached is not None:
            return cached

        backend = self.backend
        with vector_errors("COLLECTION_NOT_FOUND", f"Failed to get or create collection: {name}"):
            metadata = backend.create_collection(name, {
                "type": collection_type.value,
                "user_id": user_id,
                "version": VAULT_COLLECTION_VERSION,
                "created_at": datetime.now().isoformat(),
            })

        structured_logger.log_vector_operation("collection_ready", name, {"type": collection_type.value})
        return self.registry.put(CollectionHandle(name, collection_type, user_id, metadata))

    def get_collection(self, collection_type: CollectionType, user_id: str) -> CollectionHandle:
        """Get an existing collection; raises COLLECTION_NOT_FOUND if it was never created."""
        collection_type = CollectionType(collection_type)
        name = self.build_collection_name(collection_type, user_id)

        cached = self.registry.get(name)
        if cached is not None:
            return cached

        backend = self.backend
        with vector_errors("COLLECTION_NOT_FOUND", f"Collection not found: {name}"):
            metadata = backend.get_collection(name)

        return self.registry.put(CollectionHandle(name, collection_type, user_id, metadata))

    def delete_collection(self, collection_type: CollectionType, user_id: str) -> None:
        name = self.build_collection_name(collection_type, user_id)
        backend = self.backend
        with vector_errors("DELETE_FAILED", f"Failed to delete collection: {name}"):
            backend.delete_collection(name)
        self.registry.remove(name)
        structured_logger.log_vector_operation("collection_deleted", name)

    def list_user_collections(self, user_id: str) -> List[str]:
        backend = self.backend
        suffix = f"_{sanitize_user_id(user_id)}"
        with vector_errors("QUERY_FAILED", "Failed to list collections"):
            names = backend.list_collections()
        return [n for n in names if n.startswith(self.config.collection_prefix) and n.endswith(suffix)]

    def clear_collection_cache(self) -> None:
        self.registry.clear()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @staticmethod
    def _check_batch(ids: Sequence[str], contents: Sequence[str], metadatas: Sequence[Dict[str, Any]],
                     embeddings: Optional[Sequence[Sequence[float]]]) -> None:
        if len(contents) != len(ids) or len(metadatas) != len(ids):
            raise ValueError(
                f"Batch length mismatch: {len(ids)} ids, {len(contents)} contents, {len(metadatas)} metadatas"
            )
        if embeddings is not None and len(embeddings) != len(ids):
            raise ValueError(f"Batch length mismatch: {len(ids)} ids, {len(embeddings)} embeddings")

    def _write(self, operation: str, code: str, handle: CollectionHandle, ids: Sequence[str],
               contents: Sequence[str], metadatas: Sequence[Dict[str, Any]],
               embeddings: Optional[Sequence[Sequence[float]]]) -> None:
        self._check_batch(ids, contents, metadatas, embeddings)
        if not ids:
            return

        backend = self.backend
        serialized = [serialize_metadata(m, handle.schema) for m in metadatas]
        with vector_errors(code, f"Failed to {operation} documents in collection {handle.name}"):
            getattr(backend, operation)(handle.name, list(ids), list(contents),
                                        list(embeddings) if embeddings is not None else None, serialized)
        structured_logger.log_vector_operation(operation, handle.name, {"count": len(ids)})

    def add(self, handle: CollectionHandle, ids: Sequence[str], contents: Sequence[str],
            metadatas: Sequence[Dict[str, Any]], embeddings: Optional[Sequence[Sequence[float]]] = None) -> None:
        """Add new records as one backend request."""
        self._write("add", "INSERT_FAILED", handle, ids, contents, metadatas, embeddings)

    def update(self, handle: CollectionHandle, ids: Sequence[str], contents: Sequence[str],
               metadatas: Sequence[Dict[str, Any]], embeddings: Optional[Sequence[Sequence[float]]] = None) -> None:
        """Update existing records; metadata is merged into what is stored."""
        self._write("update", "UPDATE_FAILED", handle, ids, contents, metadatas, embeddings)

    def upsert(self, handle: CollectionHandle, ids: Sequence[str], contents: Sequence[str],
               metadatas: Sequence[Dict[str, Any]], embeddings: Optional[Sequence[Sequence[float]]] = None) -> None:
        """Insert or replace records; stored metadata is replaced as a whole."""
        self._write("upsert", "UPDATE_FAILED", handle, ids, contents, metadatas, embeddings)

    def delete(self, handle: CollectionHandle, ids: Sequence[str]) -> None:
        if not ids:
            return
        backend = self.backend
        with vector_errors("DELETE_FAILED", f"Failed to delete documents from collection {handle.name}"):
            backend.delete(handle.name, list(ids))
        structured_logger.log_vector_operation("delete", handle.name, {"count": len(ids)})

    def get_documents(self, handle: CollectionHandle, ids: Sequence[str], include_embeddings: bool = True) -> List[QueryResult]:
        if not ids:
            return []
        results = self._run_query(
            lambda backend: backend.get(handle.name, ids=list(ids), include_embeddings=include_embeddings),
            f"Failed to get documents from collection {handle.name}",
        )
        return self._restore(handle, results)

    def query_by_embedding(self, handle: CollectionHandle, embedding: Sequence[float], limit: int = 10,
                           where: Optional[Dict[str, Any]] = None, include_embeddings: bool = False,
                           timeout: Optional[float] = None) -> List[QueryResult]:
        """Nearest neighbours ordered by ascending distance."""
        results = self._run_query(
            lambda backend: backend.query(handle.name, list(embedding), limit, where=where,
                                          include_embeddings=include_embeddings),
            f"Failed to query collection {handle.name} by embedding",
            timeout,
        )
        return self._restore(handle, results)

    def query_all(self, handle: CollectionHandle, where: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, offset: Optional[int] = None,
                  include_embeddings: bool = True, timeout: Optional[float] = None) -> List[QueryResult]:
        """Unranked, filtered, paginated listing."""
        results = self._run_query(
            lambda backend: backend.get(handle.name, where=where, limit=limit, offset=offset,
                                        include_embeddings=include_embeddings),
            f"Failed to query all documents in collection {handle.name}",
            timeout,
        )
        return self._restore(handle, results)

    def count(self, handle: CollectionHandle) -> int:
        return self._run_query(lambda backend: backend.count(handle.name),
                               f"Failed to count collection {handle.name}")

    def _run_query(self, operation, message: str, timeout: Optional[float] = None):
        """Run a read against the backend under a deadline."""
        backend = self.backend
        deadline = timeout if timeout is not None else self.config.query_timeout_sec

        with vector_errors("QUERY_FAILED", message):
            if not deadline or self._executor is None:
                return operation(backend)

            future = self._executor.submit(operation, backend)
            try:
                return future.result(timeout=deadline)
            except FutureTimeoutError as e:
                future.cancel()
                raise VectorStoreError(f"{message}: timed out after {deadline}s", "QUERY_FAILED", e) from e

    @staticmethod
    def _restore(handle: CollectionHandle, results: List[QueryResult]) -> List[QueryResult]:
        for result in results:
            result.metadata = deserialize_metadata(result.metadata, handle.schema)
        return results
