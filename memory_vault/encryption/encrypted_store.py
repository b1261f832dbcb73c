"""
Encrypted store - encrypts the content field of memory records on the way into
the vector store and decrypts it on the way out.

Embeddings and metadata are stored unencrypted: similarity search needs distance
computations directly on the vectors, and metadata filters need readable values.
Only ``content`` is ever ciphertext.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from util.logging import logger as structured_logger

from ..core.config import VAULT_ENCRYPTION_ENABLED, VAULT_STRICT_KEY_LOOKUP
from ..vector.client import VectorStoreClient
from ..vector.types import CollectionHandle, CollectionType, QueryResult
from .cipher import EncryptionError, decrypt_from_string, encrypt_to_string, is_encrypted_string, zero_key
from .key_manager import KEY_PURPOSES, KeyManager, derive_sub_key

logger = logging.getLogger(__name__)

ENCRYPTED_FLAG = "_encrypted"
KEY_ID_FIELD = "_keyId"

PURPOSE_BY_COLLECTION: Dict[CollectionType, str] = {
    CollectionType.SEMANTIC: KEY_PURPOSES["SEMANTIC_CONTENT"],
    CollectionType.EPISODIC: KEY_PURPOSES["EPISODIC_MESSAGES"],
    CollectionType.PROCEDURAL: KEY_PURPOSES["PROCEDURAL_RULES"],
}


@dataclass
class EncryptedContent:
    encrypted_content: str
    key_id: str


@dataclass
class VaultDocument:
    """A memory record as handed to or returned from the encrypted store."""
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None
    distance: Optional[float] = None

    @property
    def is_encrypted(self) -> bool:
        return self.metadata.get(ENCRYPTED_FLAG) is True

    @classmethod
    def from_result(cls, result: QueryResult) -> "VaultDocument":
        return cls(
            id=result.id,
            content=result.content,
            metadata=dict(result.metadata),
            embedding=result.embedding,
            distance=result.distance,
        )


class EncryptedStore:
    """
    Content encryption keyed by ``(user_id, purpose)``.

    The stored key id is always the master key's id. Sub-keys are re-derived
    from the master key and purpose on every call and are never persisted.
    """

    def __init__(self, key_manager: KeyManager, vector_client: Optional[VectorStoreClient] = None,
                 enabled: bool = VAULT_ENCRYPTION_ENABLED, strict_key_lookup: bool = VAULT_STRICT_KEY_LOOKUP,
                 max_workers: int = 4):
        self.key_manager = key_manager
        self.vector_client = vector_client
        self.enabled = enabled
        self.strict_key_lookup = strict_key_lookup
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def enable(self) -> None:
        self.enabled = True
        structured_logger.log_operation("encryption.enabled", "success")

    def disable(self) -> None:
        self.enabled = False
        structured_logger.log_operation("encryption.disabled", "success")

    def close(self) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    def _get_executor(self) -> ThreadPoolExecutor:
        """Worker pool for batch crypto, started on first use."""
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="vault-crypto")
            return self._executor

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def encrypt_content(self, plaintext: str, user_id: str, purpose: str) -> EncryptedContent:
        """Encrypt under a sub-key of the user's active master key."""
        if not user_id:
            raise EncryptionError("No user ID provided for encryption", "INVALID_KEY")

        master_key = self.key_manager.get_user_key(user_id)
        try:
            sub_key = derive_sub_key(master_key.key, purpose)
        finally:
            zero_key(master_key.key)
        encrypted_content = encrypt_to_string(plaintext, sub_key)

        structured_logger.log_encryption_operation("encrypt", user_id, purpose, master_key.key_id)
        return EncryptedContent(encrypted_content=encrypted_content, key_id=master_key.key_id)

    def decrypt_content(self, encrypted_content: str, key_id: str, user_id: str, purpose: str) -> str:
        """Resolve ``key_id`` to a retained master key, re-derive the sub-key and decrypt."""
        if not user_id:
            raise EncryptionError("No user ID provided for decryption", "INVALID_KEY")

        master_key = self.key_manager.get_key_by_id(user_id, key_id) if key_id else None

        if master_key is None:
            if self.strict_key_lookup and key_id:
                structured_logger.log_encryption_operation("decrypt", user_id, purpose, key_id, "failed",
                                                           {"code": "KEY_NOT_FOUND"})
                raise EncryptionError(f"Key {key_id} not found for user {user_id}", "KEY_NOT_FOUND")
            master_key = self.key_manager.get_active_key(user_id)
            if master_key is None:
                raise EncryptionError(f"No key available for user {user_id}", "KEY_NOT_FOUND")

        try:
            sub_key = derive_sub_key(master_key.key, purpose)
        finally:
            zero_key(master_key.key)
        try:
            plaintext = decrypt_from_string(encrypted_content, sub_key)
        except EncryptionError as e:
            structured_logger.log_encryption_operation("decrypt", user_id, purpose, master_key.key_id, "failed",
                                                       {"code": e.code})
            raise

        structured_logger.log_encryption_operation("decrypt", user_id, purpose, master_key.key_id)
        return plaintext

    def reencrypt_content(self, encrypted_content: str, old_key_id: str, user_id: str,
                          purpose: str) -> EncryptedContent:
        """Decrypt under the old key then encrypt under the current active key."""
        plaintext = self.decrypt_content(encrypted_content, old_key_id, user_id, purpose)
        return self.encrypt_content(plaintext, user_id, purpose)

    def needs_reencryption(self, key_id: str, user_id: str) -> bool:
        """True when ``key_id`` is not the user's active key."""
        active_key = self.key_manager.get_active_key(user_id)
        if active_key is None:
            return False
        zero_key(active_key.key)
        return key_id != active_key.key_id

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def encrypt_document(self, document: VaultDocument, user_id: str, purpose: str) -> VaultDocument:
        """Encrypt ``content`` only; embedding and caller metadata pass through."""
        if not self.enabled:
            metadata = {k: v for k, v in document.metadata.items() if k not in (ENCRYPTED_FLAG, KEY_ID_FIELD)}
            return replace(document, metadata=metadata)

        encrypted = self.encrypt_content(document.content, user_id, purpose)
        return replace(
            document,
            content=encrypted.encrypted_content,
            metadata={**document.metadata, ENCRYPTED_FLAG: True, KEY_ID_FIELD: encrypted.key_id},
        )

    def decrypt_document(self, document: VaultDocument, user_id: str, purpose: str) -> VaultDocument:
        """Reverse encrypt_document. Records without the encryption flag are returned as-is."""
        if not document.is_encrypted:
            return document

        if not self.enabled:
            raise EncryptionError("Cannot decrypt document: encryption is not enabled", "DECRYPTION_FAILED")

        key_id = document.metadata.get(KEY_ID_FIELD) or ""
        content = self.decrypt_content(document.content, key_id, user_id, purpose)
        metadata = {k: v for k, v in document.metadata.items() if k not in (ENCRYPTED_FLAG, KEY_ID_FIELD)}
        return replace(document, content=content, metadata=metadata)

    def encrypt_documents(self, documents: Sequence[VaultDocument], user_id: str,
                          purpose: str) -> List[VaultDocument]:
        """Encrypt a batch in parallel. Output order matches input order."""
        return list(self._get_executor().map(lambda d: self.encrypt_document(d, user_id, purpose), documents))

    def decrypt_documents(self, documents: Sequence[VaultDocument], user_id: str,
                          purpose: str) -> List[VaultDocument]:
        return list(self._get_executor().map(lambda d: self.decrypt_document(d, user_id, purpose), documents))

    # ------------------------------------------------------------------
    # Vector store integration
    # ------------------------------------------------------------------

    def _client(self) -> VectorStoreClient:
        if self.vector_client is None:
            raise EncryptionError("Encrypted store has no vector client attached", "INVALID_DATA")
        return self.vector_client

    def store_documents(self, handle: CollectionHandle, documents: Sequence[VaultDocument]) -> List[VaultDocument]:
        """Encrypt and upsert a batch into the handle's collection as one write."""
        if not documents:
            return []
        client = self._client()
        purpose = PURPOSE_BY_COLLECTION[handle.collection_type]
        encrypted = self.encrypt_documents(documents, handle.user_id, purpose)

        embeddings = [d.embedding for d in encrypted]
        client.upsert(
            handle,
            ids=[d.id for d in encrypted],
            contents=[d.content for d in encrypted],
            metadatas=[d.metadata for d in encrypted],
            embeddings=embeddings if all(e is not None for e in embeddings) else None,
        )
        return encrypted

    def load_documents(self, handle: CollectionHandle, ids: Sequence[str],
                       include_embeddings: bool = True) -> List[VaultDocument]:
        results = self._client().get_documents(handle, ids, include_embeddings=include_embeddings)
        return self._decrypt_results(handle, results)

    def load_all(self, handle: CollectionHandle, where: Optional[Dict[str, Any]] = None,
                 limit: Optional[int] = None, offset: Optional[int] = None,
                 include_embeddings: bool = True) -> List[VaultDocument]:
        results = self._client().query_all(handle, where=where, limit=limit, offset=offset,
                                           include_embeddings=include_embeddings)
        return self._decrypt_results(handle, results)

    def query(self, handle: CollectionHandle, embedding: Sequence[float], limit: int = 10,
              where: Optional[Dict[str, Any]] = None, include_embeddings: bool = False) -> List[VaultDocument]:
        """Similarity search on plaintext embeddings, then decrypt the hits."""
        results = self._client().query_by_embedding(handle, embedding, limit=limit, where=where,
                                                     include_embeddings=include_embeddings)
        return self._decrypt_results(handle, results)

    def _decrypt_results(self, handle: CollectionHandle, results: List[QueryResult]) -> List[VaultDocument]:
        purpose = PURPOSE_BY_COLLECTION[handle.collection_type]
        documents = [VaultDocument.from_result(r) for r in results]
        return self.decrypt_documents(documents, handle.user_id, purpose)

    def migrate_records(self, handle: CollectionHandle, batch_size: int = 100) -> int:
        """
        Re-encrypt every record in the collection whose key id is not the active key.
        Records that fail to re-encrypt are logged and left on their old key;
        the rest of the sweep carries on. Returns the number of records migrated.
        """
        client = self._client()
        user_id = handle.user_id
        purpose = PURPOSE_BY_COLLECTION[handle.collection_type]
        active_key = self.key_manager.get_active_key(user_id)
        if active_key is None:
            return 0
        zero_key(active_key.key)

        stale = [
            r for r in client.query_all(handle, where={ENCRYPTED_FLAG: True}, include_embeddings=False)
            if r.metadata.get(KEY_ID_FIELD) != active_key.key_id and is_encrypted_string(r.content)
        ]

        migrated = 0
        failed = 0
        for start in range(0, len(stale), batch_size):
            ids, contents, metadatas = [], [], []
            for record in stale[start:start + batch_size]:
                old_key_id = record.metadata.get(KEY_ID_FIELD) or ""
                try:
                    reencrypted = self.reencrypt_content(record.content, old_key_id, user_id, purpose)
                except EncryptionError as e:
                    failed += 1
                    logger.warning(f"Re-encryption failed for record {record.id} in {handle.name}: {e.code}")
                    structured_logger.log_operation("encryption.migrate_record", "failed",
                                                    {"collection": handle.name, "record_id": record.id,
                                                     "key_id": old_key_id, "code": e.code})
                    continue
                ids.append(record.id)
                contents.append(reencrypted.encrypted_content)
                metadatas.append({KEY_ID_FIELD: reencrypted.key_id})

            if ids:
                client.update(handle, ids=ids, contents=contents, metadatas=metadatas)
                migrated += len(ids)

        structured_logger.log_operation("encryption.migrate", "failed" if failed else "success",
                                        {"collection": handle.name, "migrated": migrated, "failed": failed})
        return migrated
