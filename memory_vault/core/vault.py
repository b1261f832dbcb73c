"""
Memory vault wiring - one explicitly constructed set of components per process.
Entry point for storing and searching memories, scheduling offline passes,
and per-user export and erasure.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from util.logging import audit_event, logger as structured_logger

from ..encryption.encrypted_store import EncryptedStore, VaultDocument
from ..encryption.key_manager import KeyManager, KeyManagerConfig, KeyRotationResult, KeyStore
from ..vector.client import VectorStoreClient, VectorStoreConfig
from ..vector.embeddings import IEmbeddingProvider
from ..vector.semantic_store import SemanticMemory, SemanticMemoryStore
from ..vector.types import CollectionType
from .config import is_encryption_enabled
from .cross_project import CrossProjectConfig, CrossProjectEngine, CrossProjectQueryResult
from .schemas import CrossProjectQueryOptions, SourceContext
from .tasks import TaskQueue

logger = logging.getLogger(__name__)


class MemoryVault:
    """Per-user encrypted memory with cross-project reasoning."""

    def __init__(self, client: VectorStoreClient, key_manager: KeyManager, encrypted_store: EncryptedStore,
                 semantic_store: SemanticMemoryStore, cross_project: CrossProjectEngine,
                 embedding_provider: IEmbeddingProvider, task_queue: Optional[TaskQueue] = None):
        self.client = client
        self.key_manager = key_manager
        self.encrypted_store = encrypted_store
        self.semantic_store = semantic_store
        self.cross_project = cross_project
        self.embedding_provider = embedding_provider
        self.task_queue = task_queue or TaskQueue()

    def initialize(self) -> "MemoryVault":
        self.client.initialize()
        return self

    # ------------------------------------------------------------------
    # Memories
    # ------------------------------------------------------------------

    def store_memory(self, user_id: str, content: str, topics: Sequence[str] = (),
                     category: str = "domain_knowledge", project_id: Optional[str] = None,
                     conversation_id: Optional[str] = None, document_id: Optional[str] = None,
                     interface: str = "api", embedding: Optional[Sequence[float]] = None,
                     discover: bool = True) -> SemanticMemory:
        """Embed, encrypt and store a semantic memory, tagging its provenance."""
        if embedding is None:
            embedding = self.embedding_provider.embed_text(content)

        memory = self.semantic_store.create_memory(
            user_id, content, embedding, category=category, topics=topics,
            source={"type": "explicit", "interface": interface},
        )
        self.cross_project.add_source_context(user_id, memory.id, SourceContext(
            project_id=project_id,
            conversation_id=conversation_id,
            document_id=document_id,
            interface=interface,
            timestamp=memory.created_at,
        ))

        if discover:
            self.task_queue.enqueue("discover_cross_references",
                                    self.cross_project.discover_cross_references, user_id, memory.id)
        return memory

    def get_memory(self, user_id: str, memory_id: str) -> Optional[SemanticMemory]:
        return self.semantic_store.get_memory(user_id, memory_id)

    def search(self, user_id: str, query: str, limit: int = 10,
               where: Optional[Dict[str, Any]] = None) -> List[Tuple[SemanticMemory, float]]:
        embedding = self.embedding_provider.embed_text(query)
        return self.semantic_store.query(user_id, embedding, limit=limit, where=where)

    def store_records(self, user_id: str, collection_type: CollectionType,
                      documents: Sequence[VaultDocument]) -> List[VaultDocument]:
        """Encrypt and store records in any of the user's collections."""
        handle = self.client.get_or_create_collection(collection_type, user_id)
        return self.encrypted_store.store_documents(handle, documents)

    def load_records(self, user_id: str, collection_type: CollectionType,
                     where: Optional[Dict[str, Any]] = None) -> List[VaultDocument]:
        handle = self.client.get_or_create_collection(collection_type, user_id)
        return self.encrypted_store.load_all(handle, where=where)

    def query_cross_project(self, options: CrossProjectQueryOptions) -> CrossProjectQueryResult:
        return self.cross_project.query_cross_project(options)

    # ------------------------------------------------------------------
    # Offline passes
    # ------------------------------------------------------------------

    def schedule_discovery(self, user_id: str) -> str:
        return self.task_queue.enqueue("discover_all", self.cross_project.discover_all, user_id)

    def schedule_reencryption(self, user_id: str) -> List[str]:
        """Queue a re-encryption sweep for each of the user's existing collections."""
        task_ids = []
        for collection_type in self._existing_collections(user_id):
            handle = self.client.get_or_create_collection(collection_type, user_id)
            task_ids.append(self.task_queue.enqueue(f"migrate_{collection_type.value}",
                                                    self.encrypted_store.migrate_records, handle))
        return task_ids

    def rotate_user_key(self, user_id: str, migrate: bool = True) -> KeyRotationResult:
        result = self.key_manager.rotate_user_key(user_id)
        if migrate:
            self.schedule_reencryption(user_id)
        return result

    def run_pending_tasks(self, max_tasks: Optional[int] = None):
        return self.task_queue.drain(max_tasks)

    # ------------------------------------------------------------------
    # Export and erasure
    # ------------------------------------------------------------------

    def _existing_collections(self, user_id: str) -> List[CollectionType]:
        names = set(self.client.list_user_collections(user_id))
        return [t for t in CollectionType if self.client.build_collection_name(t, user_id) in names]

    def export_user_data(self, user_id: str) -> Dict[str, Any]:
        """Dump every record (decrypted) plus key metadata. Raw key bytes are never included."""
        collections: Dict[str, List[Dict[str, Any]]] = {}
        for collection_type in self._existing_collections(user_id):
            records = self.load_records(user_id, collection_type)
            collections[collection_type.value] = [
                {"id": r.id, "content": r.content, "metadata": _exportable(r.metadata)} for r in records
            ]

        source_contexts = {}
        for records in collections.values():
            for record in records:
                context = self.cross_project.get_source_context(user_id, record["id"])
                if context is not None:
                    source_contexts[record["id"]] = context.model_dump(mode="json")

        export = {
            "user_id": user_id,
            "exported_at": datetime.now().isoformat(),
            "collections": collections,
            "keys": self.key_manager.get_all_key_metadata(user_id),
            "source_contexts": source_contexts,
        }
        audit_event("user_data_exported", {"user_id": user_id},
                    {"records": sum(len(r) for r in collections.values())})
        return export

    def delete_user_data(self, user_id: str) -> int:
        """Purge every vector record of the user. Returns the number of records deleted."""
        deleted_ids: List[str] = []
        for collection_type in self._existing_collections(user_id):
            handle = self.client.get_or_create_collection(collection_type, user_id)
            deleted_ids.extend(r.id for r in self.client.query_all(handle, include_embeddings=False))
            self.client.delete_collection(collection_type, user_id)

        self.cross_project.forget_memories(user_id, deleted_ids)
        audit_event("user_data_deleted", {"user_id": user_id}, {"records": len(deleted_ids)})
        return len(deleted_ids)

    def delete_user_keys(self, user_id: str) -> None:
        """Cryptographic erasure: existing ciphertext for this user becomes unrecoverable."""
        self.key_manager.delete_user_keys(user_id)
        audit_event("user_keys_deleted", {"user_id": user_id})

    def erase_user(self, user_id: str) -> int:
        deleted = self.delete_user_data(user_id)
        self.delete_user_keys(user_id)
        return deleted

    def close(self) -> None:
        """Shut down workers and zero cached key material."""
        self.encrypted_store.close()
        self.key_manager.close()
        self.client.disconnect()
        structured_logger.log_operation("vault.close", "success")


def _exportable(metadata: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in metadata.items()}


def build_vault(embedding_provider: IEmbeddingProvider, vector_config: Optional[VectorStoreConfig] = None,
                key_config: Optional[KeyManagerConfig] = None, cross_project_config: Optional[CrossProjectConfig] = None,
                backend=None, encryption_enabled: Optional[bool] = None, key_store: Optional[KeyStore] = None,
                task_queue: Optional[TaskQueue] = None) -> MemoryVault:
    """Construct and wire one instance of every vault component."""
    client = VectorStoreClient(backend=backend, config=vector_config)
    key_manager = KeyManager(key_config, key_store or KeyStore())
    encrypted_store = EncryptedStore(
        key_manager,
        client,
        enabled=is_encryption_enabled() if encryption_enabled is None else encryption_enabled,
    )
    semantic_store = SemanticMemoryStore(client, encrypted_store)
    cross_project = CrossProjectEngine(semantic_store, embedding_provider, cross_project_config)

    vault = MemoryVault(client, key_manager, encrypted_store, semantic_store, cross_project,
                        embedding_provider, task_queue)
    return vault.initialize()
