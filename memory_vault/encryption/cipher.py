"""
Content encryption - AES-256-GCM with a fresh random nonce per call.
Bundles serialize as ``version:algorithm:iv:tag:ciphertext`` with base64 parts.
"""

import base64
import binascii
import hashlib
import os
import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

ALGORITHM = "aes-256-gcm"
KEY_LENGTH = 32     # 256 bits
IV_LENGTH = 12      # 96 bits, recommended for GCM
AUTH_TAG_LENGTH = 16
BUNDLE_VERSION = 1
COMPONENT_SEPARATOR = ":"

ENCRYPTION_ERROR_CODES = (
    "ENCRYPTION_FAILED",
    "DECRYPTION_FAILED",
    "INVALID_KEY",
    "INVALID_DATA",
    "KEY_EXPIRED",
    "KEY_NOT_FOUND",
    "AUTH_FAILED",
)


class EncryptionError(Exception):
    """Failure of a key or content operation, tagged with a fixed code."""

    def __init__(self, message: str, code: str, cause: Optional[BaseException] = None):
        if code not in ENCRYPTION_ERROR_CODES:
            raise ValueError(f"Unknown encryption error code: {code}")
        super().__init__(message)
        self.code = code
        self.cause = cause


@dataclass(frozen=True)
class EncryptedData:
    """Components of one AES-GCM encryption, each base64 encoded."""
    iv: str
    ciphertext: str
    auth_tag: str
    algorithm: str = ALGORITHM
    version: int = BUNDLE_VERSION


def generate_key() -> bytearray:
    """Generate 256 bits of key material. Mutable so it can be zeroed later."""
    return bytearray(secrets.token_bytes(KEY_LENGTH))


def derive_key_id(key: bytes) -> str:
    """Non-reversible identifier of a key: first 8 bytes of its SHA-256, hex."""
    return hashlib.sha256(bytes(key)).digest()[:8].hex()


def is_valid_key(key) -> bool:
    return isinstance(key, (bytes, bytearray)) and len(key) == KEY_LENGTH


def zero_key(key: bytearray) -> None:
    """Overwrite key material in place."""
    if isinstance(key, bytearray):
        key[:] = bytes(len(key))


def _check_key(key) -> None:
    if not is_valid_key(key):
        length = len(key) if isinstance(key, (bytes, bytearray)) else 0
        raise EncryptionError(
            f"Invalid key length: expected {KEY_LENGTH} bytes, got {length}",
            "INVALID_KEY"
        )


def encrypt(plaintext: str, key: bytes) -> EncryptedData:
    """Encrypt plaintext using AES-256-GCM."""
    _check_key(key)

    try:
        # Generate random nonce
        iv = os.urandom(IV_LENGTH)
        cipher = Cipher(algorithms.AES(bytes(key)), modes.GCM(iv), backend=None)
        encryptor = cipher.encryptor()

        ciphertext = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()

        return EncryptedData(
            iv=base64.b64encode(iv).decode("ascii"),
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            auth_tag=base64.b64encode(encryptor.tag).decode("ascii"),
        )
    except Exception as e:
        raise EncryptionError(f"Encryption failed: {e}", "ENCRYPTION_FAILED", e) from e


def _b64decode(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncryptionError(f"Invalid encrypted data: {name} is not valid base64", "INVALID_DATA", e) from e


def decrypt(encrypted_data: EncryptedData, key: bytes) -> str:
    """
    Decrypt and authenticate AES-256-GCM data.

    A tag mismatch (tampering, wrong key) raises DECRYPTION_FAILED; tampered
    plaintext is never returned.
    """
    _check_key(key)

    if not encrypted_data or not encrypted_data.iv or not encrypted_data.auth_tag:
        raise EncryptionError("Invalid encrypted data: missing required fields", "INVALID_DATA")

    if encrypted_data.algorithm != ALGORITHM:
        raise EncryptionError(f"Unsupported algorithm: {encrypted_data.algorithm}", "INVALID_DATA")

    iv = _b64decode(encrypted_data.iv, "iv")
    tag = _b64decode(encrypted_data.auth_tag, "auth tag")
    ciphertext = _b64decode(encrypted_data.ciphertext, "ciphertext")

    if len(iv) != IV_LENGTH or len(tag) != AUTH_TAG_LENGTH:
        raise EncryptionError("Invalid encrypted data: bad iv or tag length", "INVALID_DATA")

    try:
        cipher = Cipher(algorithms.AES(bytes(key)), modes.GCM(iv, tag), backend=None)
        decryptor = cipher.decryptor()
        plaintext = decryptor.update(ciphertext) + decryptor.finalize()
    except InvalidTag as e:
        raise EncryptionError(
            "Decryption failed: authentication failed (data may be corrupted, tampered, or encrypted under another key)",
            "DECRYPTION_FAILED",
            e
        ) from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise EncryptionError("Decryption failed: plaintext is not valid UTF-8", "DECRYPTION_FAILED", e) from e


def serialize_encrypted_data(data: EncryptedData) -> str:
    """Format: version:algorithm:iv:authTag:ciphertext"""
    return COMPONENT_SEPARATOR.join([
        str(data.version),
        data.algorithm,
        data.iv,
        data.auth_tag,
        data.ciphertext,
    ])


def deserialize_encrypted_data(serialized: str) -> EncryptedData:
    if not isinstance(serialized, str):
        raise EncryptionError("Invalid serialized data format", "INVALID_DATA")

    parts = serialized.split(COMPONENT_SEPARATOR)
    if len(parts) < 5:
        raise EncryptionError("Invalid serialized data format", "INVALID_DATA")

    version_str, algorithm, iv, auth_tag = parts[:4]
    ciphertext = COMPONENT_SEPARATOR.join(parts[4:])

    try:
        version = int(version_str)
    except ValueError as e:
        raise EncryptionError("Invalid version in serialized data", "INVALID_DATA", e) from e

    return EncryptedData(iv=iv, ciphertext=ciphertext, auth_tag=auth_tag, algorithm=algorithm, version=version)


def encrypt_to_string(plaintext: str, key: bytes) -> str:
    return serialize_encrypted_data(encrypt(plaintext, key))


def decrypt_from_string(serialized: str, key: bytes) -> str:
    return decrypt(deserialize_encrypted_data(serialized), key)


def is_encrypted_string(value) -> bool:
    """Check if a string looks like a serialized bundle."""
    if not value or not isinstance(value, str):
        return False

    parts = value.split(COMPONENT_SEPARATOR)
    if len(parts) < 5:
        return False

    return parts[0].isdigit() and parts[1] == ALGORITHM
