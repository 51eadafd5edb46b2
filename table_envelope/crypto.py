"""
Cryptographic primitives for table entity envelope encryption.

This module provides:
- SecureKey: Secure key wrapper with automatic zeroization
- AesCbcCipher: AES-256-CBC encryption/decryption with PKCS7 padding
- derive_column_iv: Per-property IV derivation from the content IV
"""

from __future__ import annotations

import hashlib
import secrets

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import CryptoError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
IV_SIZE: int = 16  # AES block size
BLOCK_SIZE_BITS: int = 128


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        """
        Create a SecureKey from raw bytes.

        Args:
            key_bytes: Raw key material (should be 32 bytes for AES-256)
        """
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise CryptoError("Key must be bytes or bytearray")
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Generate a cryptographically secure random 32-byte key."""
        return cls(secrets.token_bytes(AES_256_KEY_SIZE))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


def derive_column_iv(content_iv: bytes, property_name: str) -> bytes:
    """
    Derive the IV used for a single property from the entity content IV.

    The content IV and the UTF-8 property name are zero-padded to the same
    length and XOR-ed; the SHA-256 digest of the result, truncated to one AES
    block, is the property IV.

    Args:
        content_iv: 16-byte content encryption IV of the entity
        property_name: Name of the property being encrypted

    Returns:
        16-byte IV
    """
    if len(content_iv) != IV_SIZE:
        raise CryptoError(
            f"Invalid content IV size: expected {IV_SIZE}, got {len(content_iv)}"
        )

    name_bytes = property_name.encode("utf-8")
    length = max(len(content_iv), len(name_bytes))
    left = content_iv.ljust(length, b"\x00")
    right = name_bytes.ljust(length, b"\x00")
    mixed = bytes(a ^ b for a, b in zip(left, right))

    return hashlib.sha256(mixed).digest()[:IV_SIZE]


class AesCbcCipher:
    """
    AES-256-CBC encryption with PKCS7 padding.

    Provides static methods; the caller supplies both key and IV.
    """

    @staticmethod
    def encrypt(key: SecureKey, iv: bytes, plaintext: bytes) -> bytes:
        """
        Encrypt plaintext with AES-256-CBC.

        Args:
            key: 32-byte content encryption key
            iv: 16-byte initialization vector
            plaintext: Data to encrypt

        Returns:
            Ciphertext (a whole number of AES blocks)

        Raises:
            CryptoError: If key or IV size is invalid
        """
        AesCbcCipher._check_sizes(key, iv)

        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key.as_bytes()), modes.CBC(iv)).encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    @staticmethod
    def decrypt(key: SecureKey, iv: bytes, ciphertext: bytes) -> bytes:
        """
        Decrypt AES-256-CBC ciphertext and strip the PKCS7 padding.

        Raises:
            CryptoError: If sizes are invalid or the padding is corrupt
        """
        AesCbcCipher._check_sizes(key, iv)

        if not ciphertext or len(ciphertext) % IV_SIZE:
            raise CryptoError(
                f"Invalid ciphertext length: {len(ciphertext)} is not a multiple of {IV_SIZE}"
            )

        decryptor = Cipher(algorithms.AES(key.as_bytes()), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            # Generic error to prevent padding oracle attacks
            raise CryptoError("Decryption failed")

    @staticmethod
    def _check_sizes(key: SecureKey, iv: bytes) -> None:
        if len(key) != AES_256_KEY_SIZE:
            raise CryptoError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}"
            )
        if len(iv) != IV_SIZE:
            raise CryptoError(f"Invalid IV size: expected {IV_SIZE}, got {len(iv)}")


def generate_random_bytes(length: int) -> bytes:
    """
    Generate cryptographically secure random bytes.

    Args:
        length: Number of bytes to generate

    Returns:
        Random bytes of specified length
    """
    return secrets.token_bytes(length)
