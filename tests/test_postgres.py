"""
Tests for the PostgreSQL key store (skipped without DATABASE_URL).
"""

from __future__ import annotations

import pytest

from table_envelope import (
    EdmType,
    EntityProperty,
    KeyNotFoundError,
    KeyStatus,
    PostgresKeyStore,
    SymmetricKey,
    TableEncryptionPolicy,
)


async def test_create_and_resolve(key_store: PostgresKeyStore) -> None:
    key = await key_store.create_key("pg:test-1")

    resolved = await key_store.resolve_key("pg:test-1")

    assert isinstance(resolved, SymmetricKey)
    assert resolved.export_key() == key.export_key()
    assert (await key_store.get_active_key()).kid == "pg:test-1"
    assert await key_store.resolve_key("pg:unknown") is None


async def test_no_active_key(key_store: PostgresKeyStore) -> None:
    with pytest.raises(KeyNotFoundError):
        await key_store.get_active_key()
    with pytest.raises(KeyNotFoundError):
        await key_store.rotate_active_key()


async def test_rotate_keeps_old_key_resolvable(key_store: PostgresKeyStore) -> None:
    original = await key_store.create_key()

    old, new = await key_store.rotate_active_key()

    assert old.kid == original.kid
    assert (await key_store.get_active_key()).kid == new.kid
    assert (await key_store.get_key(old.kid)).status is KeyStatus.RETIRED
    assert await key_store.resolve_key(old.kid) is not None
    assert dict(await key_store.get_key_stats()) == {"ACTIVE": 1, "RETIRED": 1}


async def test_disable_only_retired_keys(key_store: PostgresKeyStore) -> None:
    original = await key_store.create_key()
    assert await key_store.disable_key(original.kid) is False

    await key_store.rotate_active_key()

    assert await key_store.disable_key(original.kid) is True
    assert await key_store.resolve_key(original.kid) is None


async def test_store_as_key_resolver(key_store: PostgresKeyStore) -> None:
    key = await key_store.create_key()
    writer = TableEncryptionPolicy(key=key)
    encrypted = await writer.encrypt_entity(
        {"Secret": EntityProperty(EdmType.STRING, "s3cret", encrypt=True)}, "pk", "rk"
    )

    reader = TableEncryptionPolicy(key_resolver=key_store)
    decrypted = await reader.decrypt_properties(encrypted)

    assert decrypted["Secret"].value == "s3cret"
