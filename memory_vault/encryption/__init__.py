"""
Encryption layer - per-user AES-256-GCM keys and content encryption for vault records.
Embeddings and metadata are never encrypted.
"""

from .cipher import (
    EncryptedData,
    EncryptionError,
    decrypt,
    decrypt_from_string,
    derive_key_id,
    encrypt,
    encrypt_to_string,
    generate_key,
    is_encrypted_string,
    is_valid_key,
)
from .key_manager import KEY_PURPOSES, KeyCache, KeyManager, KeyManagerConfig, KeyRotationResult, KeyStore, UserKey, derive_sub_key
from .encrypted_store import PURPOSE_BY_COLLECTION, EncryptedContent, EncryptedStore, VaultDocument

__all__ = [
    'EncryptedData',
    'EncryptionError',
    'encrypt',
    'decrypt',
    'encrypt_to_string',
    'decrypt_from_string',
    'is_encrypted_string',
    'derive_key_id',
    'is_valid_key',
    'generate_key',
    'KEY_PURPOSES',
    'KeyCache',
    'KeyStore',
    'KeyManager',
    'KeyManagerConfig',
    'KeyRotationResult',
    'UserKey',
    'derive_sub_key',
    'PURPOSE_BY_COLLECTION',
    'EncryptedContent',
    'EncryptedStore',
    'VaultDocument'
]
