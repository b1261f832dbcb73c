"""
Memory vault - per-user encrypted, embedding-searchable memory with
cross-project relationship and contradiction discovery.
"""

from .core.config import VERSION
from .core.cross_project import CrossProjectConfig, CrossProjectEngine, CrossProjectQueryResult
from .core.schemas import ContradictionDetection, CrossProjectQueryOptions, CrossReference, SourceContext, TimeRange
from .core.tasks import TaskQueue
from .core.vault import MemoryVault, build_vault
from .encryption import EncryptedStore, EncryptionError, KeyManager, KeyManagerConfig, KeyStore
from .vector import CollectionType, VectorStoreClient, VectorStoreConfig, VectorStoreError
from .vector.semantic_store import SemanticMemory, SemanticMemoryStore

__version__ = VERSION

__all__ = [
    'MemoryVault',
    'build_vault',
    'CrossProjectConfig',
    'CrossProjectEngine',
    'CrossProjectQueryResult',
    'CrossProjectQueryOptions',
    'ContradictionDetection',
    'CrossReference',
    'SourceContext',
    'TimeRange',
    'TaskQueue',
    'EncryptedStore',
    'EncryptionError',
    'KeyManager',
    'KeyManagerConfig',
    'KeyStore',
    'CollectionType',
    'VectorStoreClient',
    'VectorStoreConfig',
    'VectorStoreError',
    'SemanticMemory',
    'SemanticMemoryStore'
]
