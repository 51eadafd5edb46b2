"""
Key-encryption keys and key resolvers.

This module provides:
- KeyEncryptionKey: Protocol for objects that wrap/unwrap content keys
- KeyResolver: Protocol for looking up a key-encryption key by key id
- SymmetricKey: Local AES key wrap (RFC 3394, "A256KW")
- RsaKey: Local RSA-OAEP key wrap ("RSA-OAEP")
- InMemoryKeyResolver: asyncio-safe in-memory resolver

Wrap and unwrap are coroutines so that a remote key vault can back a key.
The encryption engine awaits them inline, one at a time.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable
from uuid import uuid4

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.keywrap import (
    InvalidUnwrap,
    aes_key_unwrap,
    aes_key_wrap,
)

from .crypto import AES_256_KEY_SIZE, SecureKey
from .errors import CryptoError

A256KW = "A256KW"
RSA_OAEP = "RSA-OAEP"


@runtime_checkable
class KeyEncryptionKey(Protocol):
    """Key used to wrap (encrypt) and unwrap (decrypt) content keys."""

    @property
    def kid(self) -> str:
        ...

    async def wrap_key(
        self, key: bytes, algorithm: Optional[str] = None
    ) -> Tuple[bytes, str]:
        """Wrap key bytes; return (wrapped bytes, algorithm used)."""
        ...

    async def unwrap_key(self, wrapped_key: bytes, algorithm: str) -> bytes:
        """Unwrap key bytes that were wrapped with the given algorithm."""
        ...


@runtime_checkable
class KeyResolver(Protocol):
    """Looks up a key-encryption key by its key id."""

    async def resolve_key(self, kid: str) -> Optional[KeyEncryptionKey]:
        ...


class SymmetricKey:
    """
    AES-256 key-encryption key using AES key wrap (RFC 3394).

    The key id is fixed at construction and recorded in the encryption
    metadata of every entity wrapped with this key.
    """

    def __init__(self, kid: str, key_bytes: bytes | bytearray) -> None:
        if len(key_bytes) != AES_256_KEY_SIZE:
            raise CryptoError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key_bytes)}"
            )
        self._kid = kid
        self._key = SecureKey(key_bytes)

    @classmethod
    def generate(cls, kid: Optional[str] = None) -> SymmetricKey:
        """Generate a new random key, with a random key id if none is given."""
        return cls(kid or f"local:{uuid4()}", SecureKey.generate().as_bytes())

    @property
    def kid(self) -> str:
        return self._kid

    @property
    def default_algorithm(self) -> str:
        return A256KW

    def export_key(self) -> bytes:
        """Raw key bytes, for persisting in a key store."""
        return self._key.as_bytes()

    async def wrap_key(
        self, key: bytes, algorithm: Optional[str] = None
    ) -> Tuple[bytes, str]:
        algorithm = algorithm or A256KW
        if algorithm != A256KW:
            raise CryptoError(f"Unsupported key wrap algorithm: {algorithm}")
        return aes_key_wrap(self._key.as_bytes(), key), algorithm

    async def unwrap_key(self, wrapped_key: bytes, algorithm: str) -> bytes:
        if algorithm != A256KW:
            raise CryptoError(f"Unsupported key wrap algorithm: {algorithm}")
        try:
            return aes_key_unwrap(self._key.as_bytes(), wrapped_key)
        except InvalidUnwrap:
            raise CryptoError(f"Unwrap failed for key {self._kid}")

    def __repr__(self) -> str:
        return f"SymmetricKey(kid={self._kid!r})"


class RsaKey:
    """RSA key-encryption key using OAEP padding with SHA-1 (JWA "RSA-OAEP")."""

    def __init__(self, kid: str, private_key: rsa.RSAPrivateKey) -> None:
        self._kid = kid
        self._private_key = private_key
        self._public_key = private_key.public_key()

    @classmethod
    def generate(cls, kid: Optional[str] = None, key_size: int = 2048) -> RsaKey:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        return cls(kid or f"local:{uuid4()}", private_key)

    @property
    def kid(self) -> str:
        return self._kid

    @staticmethod
    def _padding() -> padding.OAEP:
        return padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA1()),
            algorithm=hashes.SHA1(),
            label=None,
        )

    async def wrap_key(
        self, key: bytes, algorithm: Optional[str] = None
    ) -> Tuple[bytes, str]:
        algorithm = algorithm or RSA_OAEP
        if algorithm != RSA_OAEP:
            raise CryptoError(f"Unsupported key wrap algorithm: {algorithm}")
        return self._public_key.encrypt(key, self._padding()), algorithm

    async def unwrap_key(self, wrapped_key: bytes, algorithm: str) -> bytes:
        if algorithm != RSA_OAEP:
            raise CryptoError(f"Unsupported key wrap algorithm: {algorithm}")
        try:
            return self._private_key.decrypt(wrapped_key, self._padding())
        except (ValueError, InvalidKey):
            raise CryptoError(f"Unwrap failed for key {self._kid}")

    def __repr__(self) -> str:
        return f"RsaKey(kid={self._kid!r})"


class InMemoryKeyResolver:
    """
    In-memory key resolver.

    Uses asyncio.Lock for safe concurrent access.
    """

    def __init__(self, keys: Optional[List[KeyEncryptionKey]] = None) -> None:
        self._keys: Dict[str, KeyEncryptionKey] = {}
        self._lock = asyncio.Lock()
        for key in keys or []:
            self._keys[key.kid] = key

    async def put_key(self, key: KeyEncryptionKey) -> None:
        """Register a key under its key id."""
        async with self._lock:
            self._keys[key.kid] = key

    async def remove_key(self, kid: str) -> None:
        async with self._lock:
            self._keys.pop(kid, None)

    async def resolve_key(self, kid: str) -> Optional[KeyEncryptionKey]:
        """Get a key by id, or None if it is not registered."""
        async with self._lock:
            return self._keys.get(kid)

    async def list_key_ids(self) -> List[str]:
        async with self._lock:
            return list(self._keys.keys())
