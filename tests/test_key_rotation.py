"""
Tests for key rotation snapshots and content key rewrapping.
"""

from __future__ import annotations

import json

import pytest

from table_envelope import (
    TABLE_ENCRYPTION_KEY_DETAILS,
    TABLE_ENCRYPTION_PROPERTY_DETAILS,
    DecryptionError,
    EdmType,
    EntityProperty,
    EntityShapeError,
    InMemoryKeyResolver,
    KeyRotationEntity,
    SymmetricKey,
    TableEncryptionPolicy,
    TableEntity,
    TableOperationType,
    rewrap_content_key,
)
from table_envelope.key_rotation import metadata_merge_operation


async def _encrypted_entity(policy: TableEncryptionPolicy) -> TableEntity:
    properties = await policy.encrypt_entity(
        {
            "Name": EntityProperty(EdmType.STRING, "Ada"),
            "Ssn": EntityProperty(EdmType.STRING, "123-45-6789", encrypt=True),
        },
        "pk",
        "rk",
    )
    return TableEntity("pk", "rk", properties, etag="W/\"datetime'2024-01-01T00%3A00%3A00Z'\"")


class TestKeyRotationEntity:
    async def test_snapshot(self, policy: TableEncryptionPolicy) -> None:
        entity = await _encrypted_entity(policy)

        snapshot = KeyRotationEntity.from_entity(entity)

        assert snapshot.partition_key == "pk"
        assert snapshot.row_key == "rk"
        assert snapshot.etag == entity.etag
        assert snapshot.encryption_metadata_json == entity[TABLE_ENCRYPTION_KEY_DETAILS].value
        assert set(snapshot.properties) == {"Name", "Ssn"}
        assert snapshot["Name"].value == "Ada"

    async def test_is_read_only(self, policy: TableEncryptionPolicy) -> None:
        snapshot = KeyRotationEntity.from_entity(await _encrypted_entity(policy))

        with pytest.raises(AttributeError):
            snapshot.etag = "*"
        with pytest.raises(TypeError):
            snapshot.properties["Name"] = EntityProperty(EdmType.STRING, "Grace")
        with pytest.raises(AttributeError):
            del snapshot.row_key

    def test_requires_metadata(self) -> None:
        entity = TableEntity("pk", "rk", {"Name": EntityProperty(EdmType.STRING, "Ada")})

        with pytest.raises(EntityShapeError, match="no encryption metadata"):
            KeyRotationEntity.from_entity(entity)

    def test_null_metadata_counts_as_missing(self) -> None:
        entity = TableEntity(
            "pk",
            "rk",
            {
                "Name": EntityProperty(EdmType.STRING, "Ada"),
                TABLE_ENCRYPTION_KEY_DETAILS: EntityProperty(EdmType.STRING, None),
            },
        )

        with pytest.raises(EntityShapeError, match="no encryption metadata"):
            KeyRotationEntity.from_entity(entity)


class TestRewrapContentKey:
    async def test_rewrap_keeps_ciphertext_readable(
        self, policy: TableEncryptionPolicy, kek: SymmetricKey
    ) -> None:
        entity = await _encrypted_entity(policy)
        new_key = SymmetricKey.generate("test:kek-2")

        metadata_json = await rewrap_content_key(
            KeyRotationEntity.from_entity(entity), policy, new_key
        )

        old = json.loads(entity[TABLE_ENCRYPTION_KEY_DETAILS].value)
        new = json.loads(metadata_json)
        assert new["WrappedContentKey"]["KeyId"] == "test:kek-2"
        assert new["WrappedContentKey"]["EncryptedKey"] != old["WrappedContentKey"]["EncryptedKey"]
        assert new["ContentEncryptionIV"] == old["ContentEncryptionIV"]
        assert new["EncryptionAgent"] == old["EncryptionAgent"]

        rotated = dict(entity.properties)
        rotated[TABLE_ENCRYPTION_KEY_DETAILS] = EntityProperty(EdmType.STRING, metadata_json)
        decrypted = await TableEncryptionPolicy(key=new_key).decrypt_properties(rotated)
        assert decrypted["Ssn"].value == "123-45-6789"

        with pytest.raises(DecryptionError):
            await TableEncryptionPolicy(key=kek).decrypt_properties(rotated)

    async def test_old_key_found_through_resolver(self, kek: SymmetricKey) -> None:
        entity = await _encrypted_entity(TableEncryptionPolicy(key=kek))
        resolver_policy = TableEncryptionPolicy(key_resolver=InMemoryKeyResolver([kek]))

        metadata_json = await rewrap_content_key(
            KeyRotationEntity.from_entity(entity), resolver_policy, SymmetricKey.generate("new")
        )

        assert json.loads(metadata_json)["WrappedContentKey"]["KeyId"] == "new"

    async def test_merge_operation_writes_only_metadata(self, policy: TableEncryptionPolicy) -> None:
        snapshot = KeyRotationEntity.from_entity(await _encrypted_entity(policy))

        operation = metadata_merge_operation(snapshot, "{}")

        assert operation.operation_type is TableOperationType.MERGE
        assert operation.entity.etag == snapshot.etag
        assert list(operation.entity.properties) == [TABLE_ENCRYPTION_KEY_DETAILS]
        assert TABLE_ENCRYPTION_PROPERTY_DETAILS not in operation.entity.properties
