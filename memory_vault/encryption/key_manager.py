"""
Per-user key management - creation, rotation, retention, pruning and purge.
Deleting a user's keys is the cryptographic-erasure primitive: ciphertext made
under any of those keys becomes unrecoverable.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from util.logging import logger as structured_logger

from ..core.config import (
    VAULT_AUTO_ROTATE_EXPIRED,
    VAULT_KEY_CACHE_TTL_SEC,
    VAULT_KEY_EXPIRATION_DAYS,
    VAULT_MAX_RETAINED_KEYS,
)
from .cipher import KEY_LENGTH, EncryptionError, derive_key_id, generate_key, is_valid_key, zero_key

logger = logging.getLogger(__name__)

KEY_PURPOSES = {
    "SEMANTIC_CONTENT": "vault:semantic:content",
    "EPISODIC_MESSAGES": "vault:episodic:messages",
    "PROCEDURAL_RULES": "vault:procedural:rules",
}


@dataclass
class UserKey:
    """One version of a user's master key."""
    key: bytearray
    key_id: str
    user_id: str
    version: int
    created_at: datetime
    last_used_at: datetime
    expires_at: Optional[datetime] = None
    is_active: bool = True
    previous_key_id: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and self.expires_at < (now or datetime.now())

    def metadata(self) -> Dict[str, object]:
        """Everything except the key bytes."""
        return {
            "key_id": self.key_id,
            "user_id": self.user_id,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": self.is_active,
            "previous_key_id": self.previous_key_id,
        }

    def __repr__(self) -> str:
        return (f"UserKey(key_id={self.key_id!r}, user_id={self.user_id!r}, version={self.version}, "
                f"is_active={self.is_active})")


@dataclass
class KeyRotationResult:
    new_key: UserKey
    old_key: UserKey
    rotated_at: datetime = field(default_factory=datetime.now)


@dataclass
class KeyManagerConfig:
    key_expiration_days: int = VAULT_KEY_EXPIRATION_DAYS      # 0 = never expires
    max_retained_keys: int = VAULT_MAX_RETAINED_KEYS          # inactive keys kept per user
    auto_rotate_expired: bool = VAULT_AUTO_ROTATE_EXPIRED


PersistCallback = Callable[[str, List[UserKey]], None]
LoadCallback = Callable[[str], Optional[List[UserKey]]]


class KeyCache:
    """
    Per-user key lists with an optional TTL.

    Expired or evicted entries have their key bytes zeroed before they are
    dropped. ``ttl_sec=None`` keeps entries until explicitly evicted.
    """

    def __init__(self, ttl_sec: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._entries: Dict[str, Tuple[List[UserKey], Optional[float]]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[List[UserKey]]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            keys, expires_at = entry
            if expires_at is not None and self._clock() >= expires_at:
                self._drop(user_id)
                return None
            return keys

    def put(self, user_id: str, keys: List[UserKey]) -> None:
        with self._lock:
            expires_at = self._clock() + self.ttl_sec if self.ttl_sec else None
            previous = self._entries.get(user_id)
            if previous is not None:
                kept = {id(k.key) for k in keys}
                for old in previous[0]:
                    if id(old.key) not in kept:
                        zero_key(old.key)
            self._entries[user_id] = (keys, expires_at)

    def evict(self, user_id: str) -> None:
        with self._lock:
            self._drop(user_id)

    def purge_expired(self) -> int:
        """Zero and drop every expired entry. Returns the number of users evicted."""
        with self._lock:
            now = self._clock()
            expired = [u for u, (_, exp) in self._entries.items() if exp is not None and now >= exp]
            for user_id in expired:
                self._drop(user_id)
            return len(expired)

    def close(self) -> None:
        """Zero everything; call on shutdown."""
        with self._lock:
            for user_id in list(self._entries):
                self._drop(user_id)

    def _drop(self, user_id: str) -> None:
        keys, _ = self._entries.pop(user_id, ([], None))
        for user_key in keys:
            zero_key(user_key.key)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._entries


class KeyStore:
    """
    Holds every retained key version per user.

    Without persistence callbacks the cache is the source of truth and never
    expires. With callbacks the durable store is authoritative and the cache
    holds loaded keys for ``cache_ttl_sec``.
    """

    def __init__(self, cache: Optional[KeyCache] = None):
        self._cache = cache or KeyCache()
        self._on_persist: Optional[PersistCallback] = None
        self._on_load: Optional[LoadCallback] = None
        self._user_locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def set_persistence(self, on_persist: PersistCallback, on_load: LoadCallback,
                        cache_ttl_sec: Optional[float] = VAULT_KEY_CACHE_TTL_SEC) -> None:
        self._on_persist = on_persist
        self._on_load = on_load
        self._cache.ttl_sec = cache_ttl_sec

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """Mutual exclusion for one user's key chain."""
        with self._locks_guard:
            lock = self._user_locks.setdefault(user_id, threading.RLock())
        with lock:
            yield

    def get_keys(self, user_id: str) -> List[UserKey]:
        keys = self._cache.get(user_id)
        if keys is not None:
            return keys

        if self._on_load is not None:
            loaded = self._on_load(user_id)
            if loaded:
                loaded = [replace(k, key=bytearray(k.key)) for k in loaded]
                self._cache.put(user_id, loaded)
                return loaded

        return []

    def get_active_key(self, user_id: str) -> Optional[UserKey]:
        return next((k for k in self.get_keys(user_id) if k.is_active), None)

    def get_key_by_id(self, user_id: str, key_id: str) -> Optional[UserKey]:
        return next((k for k in self.get_keys(user_id) if k.key_id == key_id), None)

    def store_key(self, user_key: UserKey) -> None:
        """Add or replace a key. Storing an active key deactivates every other key."""
        with self.user_lock(user_key.user_id):
            keys = list(self.get_keys(user_key.user_id))

            if user_key.is_active:
                for existing in keys:
                    if existing.key_id != user_key.key_id:
                        existing.is_active = False

            for i, existing in enumerate(keys):
                if existing.key_id == user_key.key_id:
                    keys[i] = user_key
                    break
            else:
                keys.append(user_key)

            self._save(user_key.user_id, keys)

    def update_last_used(self, user_id: str, key_id: str) -> None:
        key = self.get_key_by_id(user_id, key_id)
        if key is not None:
            key.last_used_at = datetime.now()

    def prune_old_keys(self, user_id: str, max_retained: int) -> int:
        """Keep the active key plus the newest ``max_retained`` inactive keys."""
        with self.user_lock(user_id):
            keys = sorted(self.get_keys(user_id), key=lambda k: k.version, reverse=True)

            to_keep: List[UserKey] = []
            inactive_count = 0
            for key in keys:
                if key.is_active:
                    to_keep.append(key)
                elif inactive_count < max_retained:
                    to_keep.append(key)
                    inactive_count += 1

            pruned = len(keys) - len(to_keep)
            if pruned > 0:
                self._save(user_id, to_keep)
            return pruned

    def clear_user_keys(self, user_id: str) -> None:
        with self.user_lock(user_id):
            self._cache.evict(user_id)
            if self._on_persist is not None:
                self._on_persist(user_id, [])

    def close(self) -> None:
        self._cache.close()

    def _save(self, user_id: str, keys: List[UserKey]) -> None:
        self._cache.put(user_id, keys)
        if self._on_persist is not None:
            self._on_persist(user_id, [replace(k, key=bytearray(k.key)) for k in keys])


def _snapshot(key: UserKey) -> UserKey:
    return replace(key, key=bytearray(key.key))


def derive_sub_key(master_key: bytes, purpose: str) -> bytes:
    """
    Derive a purpose-specific key from a master key with HKDF-SHA256.
    The same (master_key, purpose) always yields the same sub-key.
    """
    if not is_valid_key(master_key):
        raise EncryptionError("Invalid master key", "INVALID_KEY")
    if not purpose:
        raise EncryptionError("Key purpose must not be empty", "INVALID_KEY")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=purpose.encode("utf-8"),
    )
    return hkdf.derive(bytes(master_key))


class KeyManager:
    """
    Lifecycle of per-user master keys on top of a KeyStore.

    Keys handed out by the public getters are copies. The store keeps sole
    ownership of the cached bytearrays, so cache expiry or pruning never zeroes
    material a caller is still holding. Callers zero their copy when done.
    """

    def __init__(self, config: Optional[KeyManagerConfig] = None, key_store: Optional[KeyStore] = None):
        self.config = config or KeyManagerConfig()
        self.store = key_store or KeyStore()

    def configure(self, **changes) -> None:
        self.config = replace(self.config, **changes)

    def set_persistence(self, on_persist: PersistCallback, on_load: LoadCallback,
                        cache_ttl_sec: Optional[float] = VAULT_KEY_CACHE_TTL_SEC) -> None:
        self.store.set_persistence(on_persist, on_load, cache_ttl_sec)

    def create_user_key(self, user_id: str) -> UserKey:
        """Generate a new active key; the previous active key is retained inactive."""
        return _snapshot(self._create_key(user_id))

    def _create_key(self, user_id: str) -> UserKey:
        with self.store.user_lock(user_id):
            active_key = self.store.get_active_key(user_id)

            key = generate_key()
            now = datetime.now()
            user_key = UserKey(
                key=key,
                key_id=derive_key_id(key),
                user_id=user_id,
                version=(active_key.version if active_key else 0) + 1,
                created_at=now,
                last_used_at=now,
                expires_at=now + timedelta(days=self.config.key_expiration_days)
                if self.config.key_expiration_days > 0 else None,
                is_active=True,
                previous_key_id=active_key.key_id if active_key else None,
            )

            self.store.store_key(user_key)
            structured_logger.log_key_event("created", user_id, user_key.key_id, user_key.version)

            if self.config.max_retained_keys > 0:
                pruned = self.store.prune_old_keys(user_id, self.config.max_retained_keys)
                if pruned:
                    structured_logger.log_key_event("pruned", user_id, status=f"{pruned} removed")

            return user_key

    def get_user_key(self, user_id: str) -> UserKey:
        """Return the active key, creating one lazily and handling expiry."""
        with self.store.user_lock(user_id):
            active_key = self.store.get_active_key(user_id)

            if active_key is not None and active_key.is_expired():
                if self.config.auto_rotate_expired:
                    active_key, retired = self._rotate(user_id)
                    zero_key(retired.key)
                else:
                    structured_logger.log_key_event("expired", user_id, active_key.key_id, active_key.version, "failed")
                    raise EncryptionError(f"Key for user {user_id} has expired", "KEY_EXPIRED")

            if active_key is None:
                active_key = self._create_key(user_id)

            self.store.update_last_used(user_id, active_key.key_id)
            return _snapshot(active_key)

    def get_active_key(self, user_id: str) -> Optional[UserKey]:
        """Active key without creating one."""
        with self.store.user_lock(user_id):
            key = self.store.get_active_key(user_id)
            return _snapshot(key) if key else None

    def get_key_by_id(self, user_id: str, key_id: str) -> Optional[UserKey]:
        """A retained key by id, or None when it is unknown or was pruned/deleted."""
        with self.store.user_lock(user_id):
            key = self.store.get_key_by_id(user_id, key_id)
            if key is None:
                return None
            self.store.update_last_used(user_id, key_id)
            return _snapshot(key)

    def rotate_user_key(self, user_id: str) -> KeyRotationResult:
        """Deactivate the current key and activate a new one, under the user's lock."""
        new_key, old_key = self._rotate(user_id)
        structured_logger.log_key_event("rotated", user_id, new_key.key_id, new_key.version)
        return KeyRotationResult(new_key=_snapshot(new_key), old_key=old_key)

    def _rotate(self, user_id: str) -> Tuple[UserKey, UserKey]:
        with self.store.user_lock(user_id):
            active_key = self.store.get_active_key(user_id)
            if active_key is None:
                raise EncryptionError(f"No active key found for user {user_id}", "INVALID_KEY")

            # Copied before pruning can zero the retired key
            old_key = replace(_snapshot(active_key), is_active=False)
            return self._create_key(user_id), old_key

    def prune_old_keys(self, user_id: str) -> int:
        return self.store.prune_old_keys(user_id, self.config.max_retained_keys)

    def has_user_key(self, user_id: str) -> bool:
        return self.store.get_active_key(user_id) is not None

    def get_key_metadata(self, user_id: str) -> Optional[Dict[str, object]]:
        key = self.store.get_active_key(user_id)
        return key.metadata() if key else None

    def get_all_key_metadata(self, user_id: str) -> List[Dict[str, object]]:
        return [k.metadata() for k in self.store.get_keys(user_id)]

    def delete_user_keys(self, user_id: str) -> None:
        """Purge every retained key version for the user (cryptographic erasure)."""
        self.store.clear_user_keys(user_id)
        structured_logger.log_key_event("deleted", user_id)

    def derive_sub_key(self, master_key: bytes, purpose: str) -> bytes:
        return derive_sub_key(master_key, purpose)

    def close(self) -> None:
        """Zero all cached key material."""
        self.store.close()
