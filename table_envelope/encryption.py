"""
Envelope encryption of table entity properties.

This module provides:
- EncryptionAgent, WrappedContentKey, EncryptionData: The metadata sidecar
  persisted with every encrypted entity, with JSON (de)serialization
- TableEncryptionPolicy: Encrypts and decrypts entity property maps

Crypto flow (encrypt):
1. Generate a fresh content encryption key (CEK) and content IV per entity
2. Wrap the CEK with the policy key
3. Encrypt each flagged string property with AES-256-CBC under the CEK and a
   per-property IV derived from the content IV and the property name
4. Store the metadata JSON and the set of encrypted property names as two
   reserved properties

Decrypt reverses this, resolving the unwrap key by the key id recorded in the
metadata.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Set

from .crypto import (
    IV_SIZE,
    AesCbcCipher,
    SecureKey,
    derive_column_iv,
    generate_random_bytes,
)
from .errors import (
    ConfigError,
    DecryptionError,
    EntityShapeError,
    KeyMismatchError,
)
from .keys import KeyEncryptionKey, KeyResolver
from .models import EdmType, EntityProperty

logger = logging.getLogger(__name__)

ENCRYPTION_PROTOCOL_V1 = "1.0"
TABLE_ENCRYPTION_KEY_DETAILS = "_ClientEncryptionMetadata1"
TABLE_ENCRYPTION_PROPERTY_DETAILS = "_ClientEncryptionMetadata2"
RESERVED_PROPERTY_NAMES = frozenset(
    (TABLE_ENCRYPTION_KEY_DETAILS, TABLE_ENCRYPTION_PROPERTY_DETAILS)
)

EncryptionResolver = Callable[[str, str, str], bool]


class EncryptionAlgorithm(Enum):
    """Content encryption algorithm recorded in the metadata."""

    AES_CBC_256 = "AES_CBC_256"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class EncryptionAgent:
    """Protocol version and algorithm that produced the ciphertext."""

    protocol: str
    encryption_algorithm: str


@dataclass(frozen=True)
class WrappedContentKey:
    """Content encryption key as wrapped by a key-encryption key."""

    key_id: str
    encrypted_key: bytes
    algorithm: str


@dataclass
class EncryptionData:
    """Encryption metadata stored as JSON with each encrypted entity."""

    encryption_agent: EncryptionAgent
    wrapped_content_key: WrappedContentKey
    content_encryption_iv: bytes
    key_wrapping_metadata: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "WrappedContentKey": {
                "KeyId": self.wrapped_content_key.key_id,
                "EncryptedKey": _b64encode(self.wrapped_content_key.encrypted_key),
                "Algorithm": self.wrapped_content_key.algorithm,
            },
            "EncryptionAgent": {
                "Protocol": self.encryption_agent.protocol,
                "EncryptionAlgorithm": self.encryption_agent.encryption_algorithm,
            },
            "ContentEncryptionIV": _b64encode(self.content_encryption_iv),
            "KeyWrappingMetadata": dict(self.key_wrapping_metadata),
        }

    def to_json(self) -> str:
        """Serialize metadata to a JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> EncryptionData:
        """
        Deserialize metadata from a JSON string.

        Raises:
            DecryptionError: If the JSON is malformed or a required field
                (content IV, wrapped key bytes) is missing
        """
        try:
            data = json.loads(json_str)
            wrapped = data["WrappedContentKey"]
            agent = data["EncryptionAgent"]
            content_iv = data.get("ContentEncryptionIV")
            encrypted_key = wrapped.get("EncryptedKey")
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            raise DecryptionError(f"Encryption metadata is corrupt: {e}") from e

        if content_iv is None:
            raise DecryptionError("Encryption metadata is missing ContentEncryptionIV")
        if encrypted_key is None:
            raise DecryptionError("Encryption metadata is missing EncryptedKey")

        try:
            return cls(
                encryption_agent=EncryptionAgent(
                    protocol=agent["Protocol"],
                    encryption_algorithm=agent["EncryptionAlgorithm"],
                ),
                wrapped_content_key=WrappedContentKey(
                    key_id=wrapped["KeyId"],
                    encrypted_key=_b64decode(encrypted_key),
                    algorithm=wrapped["Algorithm"],
                ),
                content_encryption_iv=_b64decode(content_iv),
                key_wrapping_metadata=dict(data.get("KeyWrappingMetadata") or {}),
            )
        except (TypeError, ValueError, KeyError, binascii.Error) as e:
            raise DecryptionError(f"Encryption metadata is corrupt: {e}") from e


class TableEncryptionPolicy:
    """
    Envelope encryption policy for table entities.

    For encryption a key is required. For decryption the key resolver, when
    set, selects the unwrap key by the key id stored on the entity; otherwise
    the configured key is used if, and only if, its key id matches.

    The key and resolver are shared read-only collaborators; the policy holds
    no per-call state and may be used by concurrent encrypt/decrypt calls.
    """

    def __init__(
        self,
        key: Optional[KeyEncryptionKey] = None,
        key_resolver: Optional[KeyResolver] = None,
    ) -> None:
        self._key = key
        self._key_resolver = key_resolver

    @property
    def key(self) -> Optional[KeyEncryptionKey]:
        return self._key

    @property
    def key_resolver(self) -> Optional[KeyResolver]:
        return self._key_resolver

    async def encrypt_entity(
        self,
        properties: Mapping[str, Optional[EntityProperty]],
        partition_key: str,
        row_key: str,
        encryption_resolver: Optional[EncryptionResolver] = None,
    ) -> Dict[str, EntityProperty]:
        """
        Return a new property map with flagged properties encrypted.

        A property is encrypted when its `encrypt` flag is set or when
        `encryption_resolver(partition_key, row_key, name)` returns True.
        The input map is not modified.

        Raises:
            ConfigError: If no key is configured
            EntityShapeError: If a flagged property is null or not a string,
                or the input uses a reserved property name
        """
        if self._key is None:
            raise ConfigError("Key encryption key must be set to encrypt entities")

        reserved = RESERVED_PROPERTY_NAMES.intersection(properties)
        if reserved:
            raise EntityShapeError(
                f"Property names reserved for encryption metadata: {sorted(reserved)}"
            )

        content_key = SecureKey.generate()
        content_iv = generate_random_bytes(IV_SIZE)

        # Wrap is awaited inline; the CEK never leaves this call unwrapped.
        wrapped_key, wrap_algorithm = await self._key.wrap_key(content_key.as_bytes(), None)

        encryption_data = EncryptionData(
            encryption_agent=EncryptionAgent(
                protocol=ENCRYPTION_PROTOCOL_V1,
                encryption_algorithm=EncryptionAlgorithm.AES_CBC_256.value,
            ),
            wrapped_content_key=WrappedContentKey(
                key_id=self._key.kid,
                encrypted_key=wrapped_key,
                algorithm=wrap_algorithm,
            ),
            content_encryption_iv=content_iv,
        )

        encrypted_properties: Dict[str, EntityProperty] = {}
        encrypted_names = []

        for name, prop in properties.items():
            flagged = prop is not None and prop.encrypt
            if encryption_resolver is not None and encryption_resolver(
                partition_key, row_key, name
            ):
                flagged = True

            if not flagged:
                encrypted_properties[name] = prop  # type: ignore[assignment]
                continue

            if prop is None or prop.is_null:
                raise EntityShapeError(f"Cannot encrypt null property '{name}'")
            if prop.edm_type is not EdmType.STRING:
                raise EntityShapeError(
                    f"Unsupported type for encryption: property '{name}' is {prop.edm_type}"
                )

            iv = derive_column_iv(content_iv, name)
            ciphertext = AesCbcCipher.encrypt(content_key, iv, prop.value.encode("utf-8"))

            # Binary rather than base64 text: strings cost two bytes per char on the service.
            encrypted_properties[name] = EntityProperty(EdmType.BINARY, ciphertext)
            encrypted_names.append(name)

        encrypted_properties[TABLE_ENCRYPTION_KEY_DETAILS] = EntityProperty(
            EdmType.STRING, encryption_data.to_json()
        )
        encrypted_properties[TABLE_ENCRYPTION_PROPERTY_DETAILS] = EntityProperty(
            EdmType.BINARY, json.dumps(encrypted_names).encode("utf-8")
        )

        logger.debug(
            "Encrypted %d of %d properties for entity (%s, %s) with key %s",
            len(encrypted_names),
            len(properties),
            partition_key,
            row_key,
            self._key.kid,
        )
        return encrypted_properties

    async def decrypt_entity(
        self,
        properties: Mapping[str, EntityProperty],
        encrypted_property_names: Optional[Set[str]],
    ) -> Dict[str, EntityProperty]:
        """
        Return a new property map with encrypted properties restored.

        Metadata properties are dropped from the result; properties not in
        `encrypted_property_names` pass through unchanged.

        Raises:
            ConfigError: If neither a key nor a key resolver is configured
            DecryptionError: If metadata is absent or invalid, the key cannot
                be resolved, or a value fails to decrypt
        """
        self._assert_can_decrypt()

        key_details = properties.get(TABLE_ENCRYPTION_KEY_DETAILS)
        if key_details is None or key_details.is_null or encrypted_property_names is None:
            raise DecryptionError("Encryption data not present on the entity")

        try:
            encryption_data = EncryptionData.from_json(key_details.value)
            content_key = await self.unwrap_content_key(encryption_data)

            algorithm = encryption_data.encryption_agent.encryption_algorithm
            if algorithm != EncryptionAlgorithm.AES_CBC_256.value:
                raise DecryptionError(f"Invalid encryption algorithm: {algorithm}")

            decrypted: Dict[str, EntityProperty] = {}
            for name, prop in properties.items():
                if name in RESERVED_PROPERTY_NAMES:
                    continue
                if name not in encrypted_property_names:
                    decrypted[name] = prop
                    continue

                iv = derive_column_iv(encryption_data.content_encryption_iv, name)
                plaintext = AesCbcCipher.decrypt(content_key, iv, _binary_value(prop))
                decrypted[name] = EntityProperty(EdmType.STRING, plaintext.decode("utf-8"))

            return decrypted
        except DecryptionError:
            raise
        except Exception as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

    async def decrypt_properties(
        self,
        properties: Mapping[str, EntityProperty],
        require_encryption: bool = False,
    ) -> Dict[str, EntityProperty]:
        """
        Decrypt a raw property map as returned by the service.

        Entities without encryption metadata are returned as a copy, unless
        `require_encryption` is set.
        """
        names_property = properties.get(TABLE_ENCRYPTION_PROPERTY_DETAILS)
        if TABLE_ENCRYPTION_KEY_DETAILS not in properties or names_property is None:
            if require_encryption:
                raise DecryptionError("Encryption data not present on the entity")
            return dict(properties)

        self._assert_can_decrypt()
        try:
            names = json.loads(_binary_value(names_property).decode("utf-8"))
            if not isinstance(names, list):
                raise ValueError("encrypted property names must be a JSON array")
            if not all(isinstance(name, str) for name in names):
                raise ValueError("encrypted property names must be strings")
        except (ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(f"Encryption metadata is corrupt: {e}") from e

        return await self.decrypt_entity(properties, set(names))

    async def unwrap_content_key(self, encryption_data: EncryptionData) -> SecureKey:
        """
        Resolve the key-encryption key and unwrap the content key.

        Raises:
            DecryptionError: On protocol mismatch or if the resolver has no key
            KeyMismatchError: If no resolver is set and the key id differs
        """
        self._assert_can_decrypt()

        if encryption_data.encryption_agent.protocol != ENCRYPTION_PROTOCOL_V1:
            raise DecryptionError(
                f"Encryption protocol {encryption_data.encryption_agent.protocol!r} "
                f"is not supported; expected {ENCRYPTION_PROTOCOL_V1!r}"
            )

        wrapped = encryption_data.wrapped_content_key
        if self._key_resolver is not None:
            key = await self._key_resolver.resolve_key(wrapped.key_id)
            if key is None:
                raise DecryptionError(f"Key resolver returned no key for {wrapped.key_id!r}")
        elif self._key is not None and self._key.kid == wrapped.key_id:
            key = self._key
        else:
            raise KeyMismatchError(
                f"Key id mismatch: entity was encrypted with {wrapped.key_id!r}"
            )

        try:
            return SecureKey(await key.unwrap_key(wrapped.encrypted_key, wrapped.algorithm))
        except Exception as e:
            raise DecryptionError(f"Unwrap of content key failed: {e}") from e

    def _assert_can_decrypt(self) -> None:
        if self._key is None and self._key_resolver is None:
            raise ConfigError("Key or key resolver must be set to decrypt entities")


def _b64encode(data: bytes) -> str:
    return base64.standard_b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.standard_b64decode(data)


def _binary_value(prop: EntityProperty) -> bytes:
    """Binary payload of an encrypted property; untyped JSON yields base64 text."""
    if isinstance(prop.value, (bytes, bytearray)):
        return bytes(prop.value)
    if isinstance(prop.value, str):
        return base64.standard_b64decode(prop.value)
    raise DecryptionError(f"Encrypted property has unexpected type {prop.edm_type}")
