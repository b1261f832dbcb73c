"""
Vault configuration - environment driven, read once at import.
Components take explicit config objects whose defaults come from here.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# Vector store configuration
VAULT_COLLECTION_PREFIX = os.getenv("VAULT_COLLECTION_PREFIX", "vault_")
VAULT_EMBED_DIM = int(os.getenv("VAULT_EMBED_DIM", "1536"))
VAULT_VECTOR_BACKEND = os.getenv("VAULT_VECTOR_BACKEND", "memory")  # memory|faiss
VAULT_QUERY_TIMEOUT_SEC = float(os.getenv("VAULT_QUERY_TIMEOUT_SEC", "10"))
VAULT_COLLECTION_VERSION = "1.0"

# Key management configuration
VAULT_ENCRYPTION_ENABLED = os.getenv("VAULT_ENCRYPTION_ENABLED", "true").lower() == "true"
VAULT_KEY_EXPIRATION_DAYS = int(os.getenv("VAULT_KEY_EXPIRATION_DAYS", "0"))  # 0 = never expires
VAULT_MAX_RETAINED_KEYS = int(os.getenv("VAULT_MAX_RETAINED_KEYS", "3"))
VAULT_AUTO_ROTATE_EXPIRED = os.getenv("VAULT_AUTO_ROTATE_EXPIRED", "false").lower() == "true"
VAULT_KEY_CACHE_TTL_SEC = float(os.getenv("VAULT_KEY_CACHE_TTL_SEC", "300"))
# Unknown explicitly requested key ids fail with KEY_NOT_FOUND instead of
# falling back to the active key.
VAULT_STRICT_KEY_LOOKUP = os.getenv("VAULT_STRICT_KEY_LOOKUP", "true").lower() == "true"

# Cross-project reasoning thresholds
VAULT_QUERY_RELEVANCE_FLOOR = float(os.getenv("VAULT_QUERY_RELEVANCE_FLOOR", "0.5"))
VAULT_OTHER_PROJECT_FLOOR = float(os.getenv("VAULT_OTHER_PROJECT_FLOOR", "0.6"))
VAULT_NEGATION_SIMILARITY = float(os.getenv("VAULT_NEGATION_SIMILARITY", "0.7"))
VAULT_CROSS_REFERENCE_FLOOR = float(os.getenv("VAULT_CROSS_REFERENCE_FLOOR", "0.75"))
VAULT_SUPPORTS_FLOOR = float(os.getenv("VAULT_SUPPORTS_FLOOR", "0.9"))
VAULT_CONTRADICTION_WEIGHT = float(os.getenv("VAULT_CONTRADICTION_WEIGHT", "0.4"))

# Background task queue
VAULT_TASK_MAX_ATTEMPTS = int(os.getenv("VAULT_TASK_MAX_ATTEMPTS", "3"))

VERSION = "1.0.0"


def is_encryption_enabled():
    """Check if content encryption is enabled."""
    return os.getenv("VAULT_ENCRYPTION_ENABLED", "true").lower() == "true"


def get_vector_backend_name():
    """Get configured vector backend (memory|faiss)."""
    return VAULT_VECTOR_BACKEND


def get_query_timeout():
    """Get per-query deadline in seconds."""
    return VAULT_QUERY_TIMEOUT_SEC


def create_vector_backend(name: str = None, dimension: int = None):
    """Build the configured vector backend."""
    name = name or VAULT_VECTOR_BACKEND
    dimension = dimension or VAULT_EMBED_DIM

    if name == "memory":
        from memory_vault.vector.backends import InMemoryBackend
        return InMemoryBackend()
    elif name == "faiss":
        from memory_vault.vector.backends import FaissBackend
        return FaissBackend(dimension=dimension)
    else:
        raise ValueError(f"Unknown vector backend: {name}")


def validate_vault_config():
    """Validate vault configuration and return any issues."""
    issues = []

    if VAULT_VECTOR_BACKEND not in ["memory", "faiss"]:
        issues.append(f"Invalid VAULT_VECTOR_BACKEND: {VAULT_VECTOR_BACKEND}")

    if VAULT_EMBED_DIM < 1:
        issues.append("VAULT_EMBED_DIM must be >= 1")

    if VAULT_QUERY_TIMEOUT_SEC <= 0:
        issues.append("VAULT_QUERY_TIMEOUT_SEC must be > 0")

    if VAULT_KEY_EXPIRATION_DAYS < 0:
        issues.append("VAULT_KEY_EXPIRATION_DAYS must be >= 0")

    if VAULT_MAX_RETAINED_KEYS < 0:
        issues.append("VAULT_MAX_RETAINED_KEYS must be >= 0")

    for name, value in (
        ("VAULT_QUERY_RELEVANCE_FLOOR", VAULT_QUERY_RELEVANCE_FLOOR),
        ("VAULT_OTHER_PROJECT_FLOOR", VAULT_OTHER_PROJECT_FLOOR),
        ("VAULT_NEGATION_SIMILARITY", VAULT_NEGATION_SIMILARITY),
        ("VAULT_CROSS_REFERENCE_FLOOR", VAULT_CROSS_REFERENCE_FLOOR),
        ("VAULT_SUPPORTS_FLOOR", VAULT_SUPPORTS_FLOOR),
    ):
        if not -1.0 <= value <= 1.0:
            issues.append(f"{name} must be within [-1, 1]")

    if VAULT_CONTRADICTION_WEIGHT <= 0:
        issues.append("VAULT_CONTRADICTION_WEIGHT must be > 0")

    return issues
