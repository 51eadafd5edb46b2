"""
Key rotation for encrypted table entities.

Rotation replaces the key-encryption key that wraps each entity's content
key. Property ciphertext is never touched: the content key is unwrapped with
the old key, re-wrapped with the new key, and only the metadata property is
written back.
"""

from __future__ import annotations

import logging
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .encryption import (
    TABLE_ENCRYPTION_KEY_DETAILS,
    TABLE_ENCRYPTION_PROPERTY_DETAILS,
    EncryptionData,
    TableEncryptionPolicy,
    WrappedContentKey,
)
from .errors import EntityShapeError
from .keys import KeyEncryptionKey
from .models import EdmType, EntityProperty, TableEntity, TableOperation

logger = logging.getLogger(__name__)


class KeyRotationEntity:
    """
    Read-only snapshot of an encrypted entity, taken during a rotation scan.

    Exposes the entity keys, timestamp and ETag, the verbatim encryption
    metadata JSON, and all other properties with the metadata stripped.
    """

    __slots__ = (
        "_partition_key",
        "_row_key",
        "_timestamp",
        "_etag",
        "_encryption_metadata_json",
        "_properties",
    )

    def __init__(
        self,
        partition_key: str,
        row_key: str,
        timestamp: Optional[datetime],
        etag: Optional[str],
        properties: Mapping[str, EntityProperty],
    ) -> None:
        key_details = properties.get(TABLE_ENCRYPTION_KEY_DETAILS)
        if key_details is None or key_details.is_null:
            # Only reachable when the scan did not filter on encrypted entities.
            raise EntityShapeError(
                f"Entity ({partition_key}, {row_key}) has no encryption metadata; "
                "key rotation requires encrypted entities"
            )

        stripped = {
            name: prop
            for name, prop in properties.items()
            if name not in (TABLE_ENCRYPTION_KEY_DETAILS, TABLE_ENCRYPTION_PROPERTY_DETAILS)
        }

        object.__setattr__(self, "_partition_key", partition_key)
        object.__setattr__(self, "_row_key", row_key)
        object.__setattr__(self, "_timestamp", timestamp)
        object.__setattr__(self, "_etag", etag)
        object.__setattr__(self, "_encryption_metadata_json", key_details.value)
        object.__setattr__(self, "_properties", MappingProxyType(stripped))

    @classmethod
    def from_entity(cls, entity: TableEntity) -> KeyRotationEntity:
        """Snapshot a raw (undecrypted) entity read from the service."""
        return cls(
            partition_key=entity.partition_key,
            row_key=entity.row_key,
            timestamp=entity.timestamp,
            etag=entity.etag,
            properties=entity.properties,
        )

    @property
    def partition_key(self) -> str:
        return self._partition_key

    @property
    def row_key(self) -> str:
        return self._row_key

    @property
    def timestamp(self) -> Optional[datetime]:
        return self._timestamp

    @property
    def etag(self) -> Optional[str]:
        return self._etag

    @property
    def encryption_metadata_json(self) -> str:
        return self._encryption_metadata_json

    @property
    def properties(self) -> Mapping[str, EntityProperty]:
        return self._properties

    def __getitem__(self, name: str) -> EntityProperty:
        return self._properties[name]

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError(f"{type(self).__name__} is read-only")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"{type(self).__name__} is read-only")

    def __repr__(self) -> str:
        return (
            f"KeyRotationEntity(partition_key={self._partition_key!r}, "
            f"row_key={self._row_key!r}, etag={self._etag!r})"
        )


async def rewrap_content_key(
    entity: KeyRotationEntity,
    policy: TableEncryptionPolicy,
    new_key: KeyEncryptionKey,
) -> str:
    """
    Re-wrap an entity's content key with a new key-encryption key.

    The old key is found through `policy` exactly as during decryption (the
    resolver, when set, looks it up by the key id on the entity).

    Returns:
        New encryption metadata JSON; IV, agent and wrapping metadata are kept
    """
    encryption_data = EncryptionData.from_json(entity.encryption_metadata_json)
    content_key = await policy.unwrap_content_key(encryption_data)

    wrapped_key, algorithm = await new_key.wrap_key(content_key.as_bytes(), None)

    rotated = EncryptionData(
        encryption_agent=encryption_data.encryption_agent,
        wrapped_content_key=WrappedContentKey(
            key_id=new_key.kid,
            encrypted_key=wrapped_key,
            algorithm=algorithm,
        ),
        content_encryption_iv=encryption_data.content_encryption_iv,
        key_wrapping_metadata=encryption_data.key_wrapping_metadata,
    )

    logger.debug(
        "Rewrapped content key of (%s, %s): %s -> %s",
        entity.partition_key,
        entity.row_key,
        encryption_data.wrapped_content_key.key_id,
        new_key.kid,
    )
    return rotated.to_json()


def metadata_merge_operation(entity: KeyRotationEntity, metadata_json: str) -> TableOperation:
    """Merge operation that writes back only the metadata property, conditional on the ETag."""
    patch = TableEntity(
        partition_key=entity.partition_key,
        row_key=entity.row_key,
        properties={
            TABLE_ENCRYPTION_KEY_DETAILS: EntityProperty(EdmType.STRING, metadata_json)
        },
        etag=entity.etag or "*",
    )
    return TableOperation.merge(patch)
